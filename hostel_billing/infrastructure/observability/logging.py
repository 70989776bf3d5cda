"""Structured JSON logging for production observability"""

import logging
import sys
from typing import Any, Dict
from pythonjsonlogger import jsonlogger

from hostel_billing.utils.date_utils import utcnow


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def __init__(self, *args: Any, service_name: str = "hostel-billing-gateway", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.service_name = service_name

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utcnow().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = self.service_name


def setup_logging(level: str = "INFO", service_name: str = "hostel-billing-gateway") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        service_name=service_name,
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_generation_run(
    request_id: str,
    period: str,
    created: int,
    skipped: int,
    errored: int,
    duration_ms: float,
) -> None:
    """Log structured generation outcome for analysis"""
    logging.info(
        "Rent generation completed",
        extra={
            "request_id": request_id,
            "step": "rent_generation_complete",
            "period": period,
            "created": created,
            "skipped": skipped,
            "errored": errored,
            "duration_ms": duration_ms,
        },
    )


def log_reconciliation_run(
    request_id: str,
    approved: int,
    rejected: int,
    unmatched: int,
    errored: int,
    duration_ms: float,
) -> None:
    """Log structured reconciliation outcome for analysis"""
    logging.info(
        "Reconciliation pass completed",
        extra={
            "request_id": request_id,
            "step": "reconciliation_complete",
            "approved": approved,
            "rejected": rejected,
            "unmatched": unmatched,
            "errored": errored,
            "duration_ms": duration_ms,
        },
    )
