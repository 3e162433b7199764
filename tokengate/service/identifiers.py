from __future__ import annotations

import uuid
from typing import Callable, TypeVar

from tokengate.logging import get_logger
from tokengate.service.errors import ServerError
from tokengate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 20


def new_id() -> str:
    return str(uuid.uuid4())


def create_with_unique_id(
    create: Callable[[str], T], *, attempts: int = DEFAULT_ATTEMPTS, kind: str = "row"
) -> T:
    """Call ``create`` with fresh identifiers until one is not taken.

    Only a primary-key collision is retried; any other constraint violation
    propagates. After ``attempts`` collisions a ServerError is raised.
    """
    for attempt in range(1, attempts + 1):
        candidate = new_id()
        try:
            return create(candidate)
        except ConstraintViolation as exc:
            if exc.field != "id":
                raise
            logger.warning("identifier_collision", kind=kind, attempt=attempt)
    logger.error("identifier_generation_exhausted", kind=kind, attempts=attempts)
    raise ServerError("could not allocate a unique identifier")
