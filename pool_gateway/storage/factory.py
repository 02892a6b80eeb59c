from __future__ import annotations

import logging

from pool_gateway.storage.base import GatewayStore
from pool_gateway.storage.memory import InMemoryStore
from pool_gateway.storage.sql import SqlStore


def build_store(
    database_url: str | None,
    *,
    echo: bool = False,
    logger: logging.Logger | None = None,
) -> GatewayStore:
    if not database_url:
        if logger is not None:
            logger.warning("store_backend=in_memory reason=database_url_unset")
        return InMemoryStore()
    if logger is not None:
        logger.info("store_backend=sql url=%s", _redact_url(database_url))
    return SqlStore(database_url, echo=echo)


def _redact_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if not sep or "@" not in rest:
        return url
    _, _, host = rest.rpartition("@")
    return f"{scheme}://***@{host}"
