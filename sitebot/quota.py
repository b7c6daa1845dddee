from __future__ import annotations

from .models import QuotaState


class QuotaExceededError(RuntimeError):
    pass


class QuotaGate:
    """Two independent floor-0 counters: daily generations and download credits."""

    def __init__(self, generations_remaining: int, downloads_remaining: int = 0) -> None:
        self._generations = max(0, int(generations_remaining))
        self._downloads = max(0, int(downloads_remaining))

    @classmethod
    def from_state(cls, state: QuotaState) -> QuotaGate:
        return cls(state.generations_remaining, state.downloads_remaining)

    @property
    def generations_remaining(self) -> int:
        return self._generations

    @property
    def downloads_remaining(self) -> int:
        return self._downloads

    def snapshot(self) -> QuotaState:
        return QuotaState(
            generations_remaining=self._generations,
            downloads_remaining=self._downloads,
        )

    def ensure_generation_available(self, has_override_credential: bool = False) -> None:
        if has_override_credential:
            return
        if self._generations == 0:
            raise QuotaExceededError("Лимит генераций исчерпан. Он обновится завтра.")

    def try_consume_generation(self, has_override_credential: bool = False) -> None:
        self.ensure_generation_available(has_override_credential)
        if not has_override_credential:
            self._generations -= 1

    def ensure_download_available(self) -> None:
        if self._downloads == 0:
            raise QuotaExceededError("Скачивания закончились. Купите скачивания, чтобы экспортировать сайт.")

    def try_consume_download(self) -> None:
        self.ensure_download_available()
        self._downloads -= 1

    def grant_downloads(self, count: int) -> None:
        if count <= 0:
            raise ValueError("Download grant must be positive")
        self._downloads += count

    def reset_generations(self, allowance: int) -> None:
        self._generations = max(0, int(allowance))
