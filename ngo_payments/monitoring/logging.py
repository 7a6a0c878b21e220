"""
JSON logging for the payment service.

Every event carries the ECPay merchant and which gateway (stage or
production) the process talks to, so a test checkout is never mistaken for
a real donation. ECPay form-field names that reach a log call are renamed
to the service's own keys and signing material is masked.
"""
import logging
import sys
from typing import Any, Dict

import structlog
from pythonjsonlogger import jsonlogger

from ngo_payments.config import get_settings

# ECPay field -> key used everywhere else in our logs
GATEWAY_FIELD_KEYS = {
    "MerchantTradeNo": "trade_no",
    "TradeNo": "gateway_trade_no",
    "RtnCode": "rtn_code",
    "RtnMsg": "rtn_msg",
    "TradeAmt": "amount",
}

MASKED_FIELDS = ("CheckMacValue", "HashKey", "HashIV", "hash_key", "hash_iv")
MASK = "***"


def add_gateway_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Stamp the service, merchant and gateway environment on each event."""
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.app_env)
    event_dict.setdefault("merchant_id", settings.ecpay_merchant_id)
    event_dict.setdefault("gateway", "stage" if settings.is_test_mode else "production")
    return event_dict


def rename_gateway_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Log ECPay's field names under our keys.

    An explicit keyword (e.g. ``trade_no=``) wins over a raw gateway field,
    so a verified trade number is never replaced by an unverified one.
    """
    for field, key in GATEWAY_FIELD_KEYS.items():
        if field in event_dict:
            value = event_dict.pop(field)
            event_dict.setdefault(key, value)
    return event_dict


def mask_signing_material(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for field in MASKED_FIELDS:
        if event_dict.get(field):
            event_dict[field] = MASK
    return event_dict


def setup_logging() -> None:
    """Configure structlog and route stdlib logging through a JSON handler."""
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            rename_gateway_fields,
            mask_signing_material,
            add_gateway_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Third-party libraries log through stdlib; keep their lines JSON too
    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        gateway="stage" if settings.is_test_mode else "production",
    )


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)
