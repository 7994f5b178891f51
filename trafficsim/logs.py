"""
Structured logging
==================
Console output goes through rich's RichHandler; pipelines get one JSON object
per line. Simulation events are emitted through EventLog, which stamps the
session's correlation ids on every record.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "trafficsim"

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class JsonLineFormatter(logging.Formatter):
    """Render a record and its extra fields as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(
    level: str = "INFO",
    json_path: Optional[str] = None,
    console: Optional[Console] = None,
) -> logging.Logger:
    """Install rich console output and optional JSON-lines file output."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    rich_handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(rich_handler)

    if json_path:
        file_handler = logging.FileHandler(json_path)
        file_handler.setFormatter(JsonLineFormatter())
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


class EventLog(logging.LoggerAdapter):
    """
    Per-session event sink.

    Every record carries trace_id, session_id and user_id so the collaborator's
    logs, the simulator's logs and the exported spans can be joined.
    """

    def __init__(self, session_id: str, trace_id: str, user_id: str,
                 logger: Optional[logging.Logger] = None):
        super().__init__(
            logger or logging.getLogger(f"{ROOT_LOGGER}.events"),
            {"session_id": session_id, "trace_id": trace_id, "user_id": user_id},
        )
        self.counter = 0

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def emit(self, event_type: str, message: str, level: int = logging.INFO, **fields):
        self.counter += 1
        self.log(level, message, extra={"event_type": event_type, "counter": self.counter, **fields})

    # =========================================================================
    # EVENT KINDS
    # =========================================================================

    def user_interaction(self, action: str, element: str, duration_ms: int = 0):
        self.emit("USER_INTERACTION", f"{action} {element}",
                  action=action, element=element, duration_ms=duration_ms)

    def product_view(self, product: Dict[str, Any], engagement_ms: int):
        self.emit("PRODUCT_VIEW", f"viewed {product['name']}",
                  product_id=product["id"], category=product.get("category"),
                  engagement_ms=engagement_ms)

    def cart_action(self, action: str, product: Dict[str, Any], quantity_before: int,
                    quantity_after: int, cart_total: float):
        self.emit("CART_ACTION", f"cart {action} {product['name']}",
                  action=action, product=product, product_id=product["id"],
                  quantity_before=quantity_before, quantity_after=quantity_after,
                  cart_total=round(cart_total, 2))

    def payment_attempt(self, status: str, payment: Dict[str, Any], customer: Dict[str, Any],
                        transaction: Dict[str, Any], duration_ms: int = 0):
        level = logging.ERROR if status == "failed" else logging.INFO
        self.emit("PAYMENT_ATTEMPT", f"payment {status} for {transaction['order_id']}", level=level,
                  status=status, payment=payment, customer=customer,
                  transaction=transaction, duration_ms=duration_ms)

    def data_operation(self, operation: str, entity_type: str, entity_id: str,
                       data: Dict[str, Any], duration_ms: int = 0):
        self.emit("DATA_OPERATION", f"{operation} {entity_type} {entity_id}",
                  operation=operation, entity_type=entity_type, entity_id=entity_id,
                  data_size=len(json.dumps(data, default=str)), duration_ms=duration_ms)

    def reservation(self, reservation_id: str, details: Dict[str, Any]):
        self.emit("RESERVATION", f"reservation {reservation_id} created",
                  reservation_id=reservation_id, reservation=details)

    def http_request(self, method: str, path: str, status: int, duration_ms: int, failed: bool):
        level = logging.WARNING if failed else logging.DEBUG
        self.emit("HTTP_REQUEST", f"{method} {path} -> {status}", level=level,
                  http_method=method, http_path=path, http_status=status,
                  duration_ms=duration_ms, failed=failed)
