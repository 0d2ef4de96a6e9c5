from .base import LanguageModelProvider

__all__ = ["LanguageModelProvider"]
