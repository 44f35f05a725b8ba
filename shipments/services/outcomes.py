"""
SHIPMENTS App - Operation results

Every public engine operation returns a DispatchResult instead of raising.
"""

import logging
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Dict, Optional

from shipments.exceptions import DispatchError, FailureReason

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    success: bool
    message: str = ''
    reason: Optional[str] = None
    shipment: Any = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, shipment=None, message: str = '', **data) -> 'DispatchResult':
        return cls(success=True, message=message, shipment=shipment, data=data)

    @classmethod
    def failure(cls, error: DispatchError) -> 'DispatchResult':
        return cls(
            success=False,
            message=error.message,
            reason=error.reason,
            data=dict(error.data),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': self.success,
            'message': self.message,
        }
        if self.reason:
            result['reason'] = str(self.reason)
        if self.shipment is not None:
            result['shipment_id'] = str(self.shipment.pk)
            result['state'] = self.shipment.state
        if self.data:
            result.update(self.data)
        return result


def returns_result(func):
    """Turn DispatchError raised by an engine operation into a failed result."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DispatchError as e:
            level = logging.INFO if e.reason in (
                FailureReason.NO_LONGER_AVAILABLE,
                FailureReason.OUT_OF_RANGE,
                FailureReason.WINDOW_CLOSED,
            ) else logging.WARNING
            logger.log(level, f"[RESULT] {func.__qualname__} failed: {e.reason} - {e.message}")
            return DispatchResult.failure(e)

    return wrapper
