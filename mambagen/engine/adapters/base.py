"""Base adapter interface for model families."""

from abc import ABC, abstractmethod
from typing import Any, Iterator


class BaseAdapter(ABC):
    """
    Abstract base class for model-family adapters.

    Each supported model family implements this interface so callers can
    run generation without knowing model-specific details.
    """

    @abstractmethod
    def load(self, model_path: str, **kwargs) -> None:
        """
        Load model and tokenizer from the given path.

        Args:
            model_path: Local directory holding `config.json` and a checkpoint.
            **kwargs: Model-specific loading options (tokenizer, skip_missing, etc.).
        """
        pass

    @abstractmethod
    def generate(
        self,
        prompt: str,
        max_new_tokens: int = 200,
        temperature: float | None = None,
        **kwargs,
    ) -> str:
        """
        Generate a completion for the given prompt.

        Args:
            prompt: Input text.
            max_new_tokens: Tokens to sample after the prompt.
            temperature: Sampling temperature (None = greedy).
            **kwargs: Additional generation parameters.

        Returns:
            Generated text (including the prompt's echo).
        """
        pass

    @abstractmethod
    def stream_generate(
        self,
        prompt: str,
        max_new_tokens: int = 200,
        temperature: float | None = None,
        **kwargs,
    ) -> Iterator[str]:
        """
        Stream text for the given prompt.

        Args:
            prompt: Input text.
            max_new_tokens: Tokens to sample after the prompt.
            temperature: Sampling temperature (None = greedy).
            **kwargs: Additional generation parameters.

        Yields:
            Displayable text chunks as they become available.
        """
        pass

    @property
    @abstractmethod
    def model_info(self) -> dict[str, Any]:
        """
        Return metadata about the loaded model.

        Returns:
            Dict with keys like 'model_path', 'n_layer', 'vocab_size', etc.
        """
        pass

    def unload(self) -> None:
        """
        Unload the model and free resources.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass
