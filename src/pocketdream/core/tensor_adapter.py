"""Binding plans for noise-predictor networks with unknown input contracts.

Different exporters name and shape the inputs of the same conceptual UNet
differently.  A standard export takes ``sample``, ``timestep`` (int32,
``[batch]``) and ``encoder_hidden_states``; a latent-consistency export
takes a float ``timestep`` shaped ``[batch, 1]`` plus a ``timestep_cond``
guidance embedding.  This module inspects the declared inputs once per model
load and produces a :class:`TensorBindingPlan` that later turns the
per-step arrays into a feed dictionary.

Role Dispatch
-------------
Roles are assigned by walking a table of :class:`BindingRule` objects.  The
first rule whose constraints (name fragments, rank, element type) match an
input decides its role:

1. :data:`DEFAULT_RULES` hold the name heuristics (``sample``/``latent``,
   ``timestep`` without ``cond``, ``encoder``/``hidden``/``context``).
2. :data:`STRUCTURAL_RULES` bind still-unclaimed roles by rank and element
   type alone (rank 4 float is the latent, rank 3 float the conditioning).
3. Whatever is left and looks like a timestep or condition input becomes an
   :attr:`InputRole.AUXILIARY` input.  Anything else is rejected with a
   :class:`~pocketdream.core.errors.ConfigurationError`; the plan never
   guesses silently.

New exporter conventions are supported by passing extra rules to
:func:`build_binding_plan`; the denoising loop only ever sees the plan.
"""

from __future__ import annotations

import enum
import logging
import math
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np

from pocketdream.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Width of the guidance embedding when the exporter left it dynamic.
DEFAULT_AUX_EMBEDDING_DIM = 256

FLOAT_TYPES = frozenset({"tensor(float)", "tensor(float16)", "tensor(double)"})

_NUMPY_TYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int32)": np.int32,
    "tensor(int64)": np.int64,
}

# Names used when a network reports no inputs at all.
STANDARD_INPUT_NAMES = {
    "sample": "tensor(float)",
    "timestep": None,
    "encoder_hidden_states": "tensor(float)",
}


class InputRole(str, enum.Enum):
    """Semantic role of a noise-predictor input."""

    SAMPLE = "sample"
    TIMESTEP = "timestep"
    CONDITIONING = "conditioning"
    AUXILIARY = "auxiliary"


REQUIRED_ROLES = (InputRole.SAMPLE, InputRole.TIMESTEP, InputRole.CONDITIONING)


@dataclass(frozen=True)
class TensorSpec:
    """Declared name, element type and shape of one network input.

    ``shape`` is ``None`` when the exporter gave no shape at all; individual
    dynamic dimensions are ``None`` inside the tuple.
    """

    name: str
    element_type: str | None = None
    shape: tuple[int | None, ...] | None = None

    @classmethod
    def from_node_arg(cls, node_arg: Any) -> "TensorSpec":
        """Build a spec from an ``onnxruntime.NodeArg`` (or look-alike)."""
        raw_shape = getattr(node_arg, "shape", None)
        shape: tuple[int | None, ...] | None
        if raw_shape is None:
            shape = None
        else:
            shape = tuple(d if isinstance(d, int) and d >= 0 else None for d in raw_shape)
        return cls(
            name=node_arg.name,
            element_type=getattr(node_arg, "type", None),
            shape=shape,
        )

    @property
    def rank(self) -> int | None:
        return None if self.shape is None else len(self.shape)

    @property
    def is_float(self) -> bool:
        return self.element_type in FLOAT_TYPES

    def numpy_dtype(self, default: type = np.int32) -> type:
        """numpy dtype matching the declared element type."""
        return _NUMPY_TYPES.get(self.element_type or "", default)

    def dim(self, index: int, fallback: int) -> int:
        """Declared size of dimension *index*, or *fallback* when dynamic."""
        if self.shape is None or index >= len(self.shape) or self.shape[index] is None:
            return fallback
        return self.shape[index]


@dataclass(frozen=True)
class BindingRule:
    """One row of the role dispatch table.

    Every constraint that is set must hold for the rule to match.

    Attributes:
        role: Role assigned when the rule matches.
        name_contains: Match if the lower-cased name contains any fragment.
        name_excludes: Reject if the lower-cased name contains any fragment.
        names: Match if the lower-cased name equals one of these.
        ranks: Match only these declared ranks.
        float_only: Match only floating point element types.
        predicate: Arbitrary extra check on the whole spec.
    """

    role: InputRole
    name_contains: tuple[str, ...] = ()
    name_excludes: tuple[str, ...] = ()
    names: tuple[str, ...] = ()
    ranks: tuple[int, ...] = ()
    float_only: bool = False
    predicate: Callable[[TensorSpec], bool] | None = None

    def matches(self, spec: TensorSpec) -> bool:
        name = spec.name.lower()
        if self.names or self.name_contains:
            by_name = name in self.names or any(f in name for f in self.name_contains)
            if not by_name:
                return False
        if any(f in name for f in self.name_excludes):
            return False
        if self.ranks and spec.rank not in self.ranks:
            return False
        if self.float_only and not spec.is_float:
            return False
        if self.predicate is not None and not self.predicate(spec):
            return False
        return True


DEFAULT_RULES: tuple[BindingRule, ...] = (
    BindingRule(InputRole.SAMPLE, name_contains=("sample", "latent")),
    BindingRule(
        InputRole.TIMESTEP,
        names=("timestep", "t"),
        name_contains=("timestep",),
        name_excludes=("cond",),
    ),
    BindingRule(InputRole.CONDITIONING, name_contains=("encoder", "hidden", "context")),
)

STRUCTURAL_RULES: tuple[BindingRule, ...] = (
    BindingRule(InputRole.SAMPLE, ranks=(4,), float_only=True),
    BindingRule(InputRole.CONDITIONING, ranks=(3,), float_only=True),
)


def _is_auxiliary(spec: TensorSpec) -> bool:
    name = spec.name.lower()
    return "timestep" in name or "cond" in name


def sinusoidal_embedding(value: float, dim: int) -> np.ndarray:
    """Transformer-style sinusoidal encoding of a scalar.

    The first half holds ``sin(value * f_i)``, the second half
    ``cos(value * f_i)`` with ``f_i = exp(-ln(10000) * i / (dim // 2))``.
    An odd *dim* leaves the last element at zero.
    """
    half = dim // 2
    embedding = np.zeros(dim, dtype=np.float32)
    if half == 0:
        return embedding
    freqs = np.exp(np.arange(half, dtype=np.float64) * (-math.log(10000.0) / half))
    angles = value * freqs
    embedding[:half] = np.sin(angles)
    embedding[half : 2 * half] = np.cos(angles)
    return embedding


@dataclass(frozen=True)
class Binding:
    spec: TensorSpec
    role: InputRole


@dataclass(frozen=True)
class TensorBindingPlan:
    """Mapping from declared input names to roles, plus feed construction.

    Built once per loaded model by :func:`build_binding_plan`.
    """

    bindings: tuple[Binding, ...]

    def names_for(self, role: InputRole) -> list[str]:
        return [b.spec.name for b in self.bindings if b.role is role]

    def spec_for(self, role: InputRole) -> TensorSpec:
        for binding in self.bindings:
            if binding.role is role:
                return binding.spec
        raise KeyError(role)

    @property
    def has_auxiliary(self) -> bool:
        return any(b.role is InputRole.AUXILIARY for b in self.bindings)

    def describe(self) -> dict[str, str]:
        """``{input name: role}`` for logging and diagnostics."""
        return {b.spec.name: b.role.value for b in self.bindings}

    def build_feeds(
        self,
        latents: np.ndarray,
        timestep: float,
        conditioning: np.ndarray,
        guidance_scale: float,
    ) -> dict[str, np.ndarray]:
        """Turn one step's arrays into a feed dictionary for the network.

        Args:
            latents: Batched latent input, ``[batch, C, h, w]``.
            timestep: Current timestep value.
            conditioning: Batched embeddings, ``[batch, seq, hidden]``.
            guidance_scale: Guidance weight, used by auxiliary inputs.

        Returns:
            Input name to array mapping accepted by ``session.run``.
        """
        batch = latents.shape[0]
        feeds: dict[str, np.ndarray] = {}
        for binding in self.bindings:
            spec = binding.spec
            if binding.role is InputRole.SAMPLE:
                feeds[spec.name] = latents.astype(spec.numpy_dtype(np.float32), copy=False)
            elif binding.role is InputRole.CONDITIONING:
                feeds[spec.name] = conditioning.astype(spec.numpy_dtype(np.float32), copy=False)
            elif binding.role is InputRole.TIMESTEP:
                feeds[spec.name] = _timestep_tensor(spec, timestep, batch)
            else:
                feeds[spec.name] = _auxiliary_tensor(spec, timestep, guidance_scale, batch)
        return feeds


def _timestep_tensor(spec: TensorSpec, timestep: float, batch: int) -> np.ndarray:
    """Timestep replicated over the batch in the declared type and rank.

    Float exports get floats, everything else (including unknown metadata)
    gets integers.  Rank 2 declarations get ``[batch, 1]``.
    """
    if spec.is_float:
        values = np.full(batch, timestep, dtype=spec.numpy_dtype(np.float32))
    else:
        dtype = np.int64 if spec.element_type == "tensor(int64)" else np.int32
        values = np.full(batch, int(timestep), dtype=dtype)
    if spec.rank == 2:
        values = values.reshape(batch, 1)
    return values


def _auxiliary_tensor(
    spec: TensorSpec, timestep: float, guidance_scale: float, batch: int
) -> np.ndarray:
    """Input for exporter-specific extras such as LCM's ``timestep_cond``.

    Float inputs of rank >= 2 carry a sinusoidal embedding of
    ``(guidance_scale - 1) * 1000``; rank 1 float inputs carry
    ``guidance_scale - 1`` directly.  Integer inputs and inputs without shape
    metadata carry the raw timestep.
    """
    w = guidance_scale - 1.0

    if spec.shape is None:
        if spec.is_float:
            return np.full(batch, timestep, dtype=spec.numpy_dtype(np.float32))
        return np.full(batch, int(timestep), dtype=spec.numpy_dtype(np.int32))

    if spec.rank is not None and spec.rank >= 2:
        dim0 = spec.dim(0, batch)
        dim1 = spec.dim(1, DEFAULT_AUX_EMBEDDING_DIM)
        if spec.is_float:
            embedding = sinusoidal_embedding(w * 1000.0, dim1)
            return np.tile(embedding, (dim0, 1)).astype(spec.numpy_dtype(np.float32))
        return np.full((dim0, dim1), int(timestep), dtype=spec.numpy_dtype(np.int32))

    if spec.is_float:
        return np.full(batch, w, dtype=spec.numpy_dtype(np.float32))
    return np.full(batch, int(timestep), dtype=spec.numpy_dtype(np.int32))


def build_binding_plan(
    inputs: Iterable[Any],
    rules: Sequence[BindingRule] | None = None,
    structural_rules: Sequence[BindingRule] = STRUCTURAL_RULES,
) -> TensorBindingPlan:
    """Classify a noise predictor's declared inputs.

    Args:
        inputs: ``session.get_inputs()`` result, or :class:`TensorSpec`
            objects.
        rules: Name-based dispatch table.  Defaults to :data:`DEFAULT_RULES`;
            custom rules are tried before the defaults.
        structural_rules: Rank/type table applied to inputs no name rule
            claimed.

    Returns:
        The :class:`TensorBindingPlan`.

    Raises:
        ConfigurationError: If an input cannot be classified, two inputs
            claim the same core role, or a core role is unbound.
    """
    specs = [i if isinstance(i, TensorSpec) else TensorSpec.from_node_arg(i) for i in inputs]
    table: tuple[BindingRule, ...] = tuple(rules or ()) + DEFAULT_RULES

    if not specs:
        logger.warning("Noise predictor declares no inputs, using standard input names")
        specs = [TensorSpec(name, etype) for name, etype in STANDARD_INPUT_NAMES.items()]

    roles: dict[str, InputRole] = {}
    for spec in specs:
        rule = next((r for r in table if r.matches(spec)), None)
        if rule is not None:
            roles[spec.name] = rule.role

    for spec in specs:
        if spec.name in roles:
            continue
        bound = set(roles.values())
        rule = next(
            (r for r in structural_rules if r.role not in bound and r.matches(spec)),
            None,
        )
        if rule is not None:
            roles[spec.name] = rule.role
        elif _is_auxiliary(spec):
            logger.info(
                "Input '%s' (type=%s, shape=%s) bound as auxiliary guidance input",
                spec.name,
                spec.element_type,
                spec.shape,
            )
            roles[spec.name] = InputRole.AUXILIARY
        else:
            raise ConfigurationError(
                f"Cannot determine the role of noise predictor input '{spec.name}' "
                f"(type={spec.element_type}, shape={spec.shape})"
            )

    for role in REQUIRED_ROLES:
        claimed = [name for name, r in roles.items() if r is role]
        if not claimed:
            raise ConfigurationError(f"Noise predictor has no input for role '{role.value}'")
        if len(claimed) > 1:
            raise ConfigurationError(
                f"Inputs {claimed} all look like the '{role.value}' input; "
                "add a binding rule for this exporter"
            )

    plan = TensorBindingPlan(bindings=tuple(Binding(s, roles[s.name]) for s in specs))
    logger.debug("Binding plan: %s", plan.describe())
    return plan

