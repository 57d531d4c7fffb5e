"""
Sentence segmentation for streamed agent text.

Units end at a sentence terminator or a blank line. A run of text longer than
the soft limit without one is cut at its last comma-like pause. The scan is
per character, so the units produced do not depend on how the text arrives.
"""
from typing import List

SENTENCE_TERMINATORS = "。！？.!?"
PAUSE_MARKS = "，,、；;：:"


class SentenceBuffer:
    def __init__(
        self,
        soft_limit: int = 80,
        terminators: str = SENTENCE_TERMINATORS,
        pauses: str = PAUSE_MARKS,
    ):
        self.soft_limit = soft_limit
        self.terminators = frozenset(terminators)
        self.pauses = frozenset(pauses)
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def append(self, text: str) -> List[str]:
        """Accumulate ``text`` and return the units it completed, in order."""
        if not text:
            return []
        self._buffer += text

        units: List[str] = []
        while True:
            cut = self._next_cut()
            if cut < 0:
                break
            unit = self._buffer[:cut].strip()
            self._buffer = self._buffer[cut:]
            if unit:
                units.append(unit)
        return units

    def flush(self) -> str:
        """Return whatever is left and clear the buffer."""
        rest = self._buffer.strip()
        self._buffer = ""
        return rest

    def clear(self) -> None:
        self._buffer = ""

    def _next_cut(self) -> int:
        buf = self._buffer
        last_pause = -1
        for i, ch in enumerate(buf):
            if ch in self.terminators:
                return i + 1
            if ch == "\n" and i > 0 and buf[i - 1] == "\n":
                return i + 1
            if ch in self.pauses:
                last_pause = i
            if i + 1 > self.soft_limit and last_pause >= 0:
                return last_pause + 1
        return -1
