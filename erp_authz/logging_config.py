from __future__ import annotations

import logging


def configure_app_logging(level: str = "INFO") -> None:
    """
    Set the level for the `erp_authz` package loggers.

    Uvicorn (or the embedding service) owns the handlers; this only adjusts
    verbosity. Set `ERP_LOG_LEVEL=DEBUG` to see every authorization decision.
    """

    normalized = level.upper()
    logging.getLogger("erp_authz").setLevel(normalized)
    logging.getLogger("erp_authz").propagate = True
