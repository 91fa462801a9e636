from __future__ import annotations

import logging
from typing import Callable, TypeVar

from src.sermon_api.domain.results import ErrorKind, OperationCancelledError, ServiceResult

T = TypeVar("T")


def run_guarded(
    logger: logging.Logger,
    description: str,
    operation: Callable[[], ServiceResult[T]],
) -> ServiceResult[T]:
    """Run a service operation so that no exception escapes the service.

    Cancellation becomes CANCELLED; anything unexpected (store or cache
    faults) is logged with its traceback and becomes INTERNAL_ERROR. Expected
    failures are returned by ``operation`` itself.
    """

    try:
        return operation()
    except OperationCancelledError:
        logger.info("Cancelled while trying to %s", description)
        return ServiceResult.fail(ErrorKind.CANCELLED, f"Request cancelled while trying to {description}")
    except Exception as exc:
        logger.exception("Failed to %s", description)
        return ServiceResult.fail(ErrorKind.INTERNAL_ERROR, f"Failed to {description}: {exc}")
