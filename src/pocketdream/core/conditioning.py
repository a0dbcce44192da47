"""Prompt tokenisation and text-encoder conditioning.

The tokenizer is anything that behaves like ``transformers.CLIPTokenizer``:
called with ``padding="max_length"``, ``truncation=True`` and
``return_tensors="np"`` it returns a mapping with an ``input_ids`` array.
The text encoder is an inference session exposing ``get_inputs()`` and
``run(output_names, feeds)``.
"""

from __future__ import annotations

import logging
from typing import Any

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_TEXT_INPUT_NAME = "input_ids"


class TextConditioner:
    """Turns a prompt pair into the batched ``[uncond, cond]`` embedding.

    Args:
        tokenizer: CLIP-style tokenizer.
        text_encoder: Text encoder inference session.
        max_length: Fixed sequence length of the text encoder.
    """

    def __init__(self, tokenizer: Any, text_encoder: Any, max_length: int = 77) -> None:
        self.tokenizer = tokenizer
        self.text_encoder = text_encoder
        self.max_length = max_length

        inputs = text_encoder.get_inputs()
        if inputs:
            self._input_name = inputs[0].name
            self._input_dtype = np.int64 if inputs[0].type == "tensor(int64)" else np.int32
        else:
            self._input_name = DEFAULT_TEXT_INPUT_NAME
            self._input_dtype = np.int32

    def encode_tokens(self, text: str) -> np.ndarray:
        """Tokenise *text*, padded/truncated to ``max_length``.

        Returns:
            Token ids shaped ``[1, max_length]``.
        """
        encoded = self.tokenizer(
            text,
            padding="max_length",
            max_length=self.max_length,
            truncation=True,
            return_tensors="np",
        )
        ids = np.asarray(encoded["input_ids"]).reshape(1, -1)
        return ids[:, : self.max_length].astype(self._input_dtype)

    def encode(self, text: str) -> np.ndarray:
        """Run the text encoder on *text*.

        Returns:
            float32 embedding shaped ``[1, max_length, hidden]``.
        """
        token_ids = self.encode_tokens(text)
        outputs = self.text_encoder.run(None, {self._input_name: token_ids})
        return np.asarray(outputs[0], dtype=np.float32)

    def condition(self, prompt: str, negative_prompt: str = "") -> np.ndarray:
        """Encode both prompts and stack them as ``[uncond, cond]``.

        Returns:
            float32 embedding shaped ``[2, max_length, hidden]``.
        """
        cond = self.encode(prompt)
        uncond = self.encode(negative_prompt)
        embeddings = np.concatenate([uncond, cond], axis=0)
        logger.debug("Conditioning embeddings shape: %s", embeddings.shape)
        return embeddings
