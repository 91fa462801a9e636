from __future__ import annotations

import threading
from typing import Optional

from src.sermon_api.domain.results import OperationCancelledError


class CancellationToken:
    """Cooperative cancellation signal passed down to session store calls.

    The WebSocket loop cancels its token when the client disconnects so that
    any store access still queued for that connection is abandoned.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled by caller")


def check_cancelled(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()
