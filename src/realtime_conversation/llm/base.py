"""
Contrato del proveedor de modelo de lenguaje (LLM).

stream_response() es un iterador asíncrono cancelable: interrupt() hace que
termine normalmente, sin excepción, y la respuesta parcial no entra al
historial.
"""
import abc
from typing import AsyncIterator, Dict, List, Literal

Role = Literal["user", "assistant"]


class LanguageModelProvider(abc.ABC):

    def __init__(self, system_prompt: str = "") -> None:
        self.system_prompt = system_prompt
        self._history: List[Dict[str, str]] = []

    @abc.abstractmethod
    async def generate_response(self, user_message: str) -> str:
        """Respuesta completa (sin streaming)."""

    @abc.abstractmethod
    def stream_response(self, user_message: str) -> AsyncIterator[str]:
        """Fragmentos de texto en orden, a medida que llegan."""

    @abc.abstractmethod
    def interrupt(self) -> None:
        """Pide cancelar la generación en curso (no bloquea)."""

    @abc.abstractmethod
    def is_generating(self) -> bool:
        ...

    def add_to_history(self, role: Role, content: str) -> None:
        if role not in ("user", "assistant"):
            raise ValueError(f"role inválido: {role}")
        self._history.append({"role": role, "content": content})

    def get_history(self) -> List[Dict[str, str]]:
        return [dict(m) for m in self._history]

    def clear_history(self) -> None:
        """Borra el historial; el system prompt se mantiene."""
        self._history = []

    def update_system_prompt(self, prompt: str, clear_history: bool = False) -> None:
        self.system_prompt = prompt
        if clear_history:
            self.clear_history()
