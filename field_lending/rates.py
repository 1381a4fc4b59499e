"""
Interest Rate Provider Module

Pluggable sources for the interest rate applied at loan approval: a fixed
rate, the latest administrator-set rate in storage, or a remote rate service
reached over HTTP. Every provider returns a non-negative fraction.
"""

import httpx
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .exceptions import ValidationError

logger = logging.getLogger("fieldbook.rates")

DEFAULT_INTEREST_RATE = Decimal('0.10')


def parse_rate(value: Any) -> Optional[Decimal]:
    """Parse a rate; None for anything negative, non-finite or unparseable"""
    if value is None or isinstance(value, bool):
        return None
    try:
        rate = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate < 0:
        return None
    return rate


class RateProvider(ABC):
    """Source of the interest rate applied at approval time"""

    @abstractmethod
    def current_rate(self) -> Decimal:
        pass


class FixedRateProvider(RateProvider):

    def __init__(self, rate: Decimal = DEFAULT_INTEREST_RATE):
        parsed = parse_rate(rate)
        if parsed is None:
            raise ValidationError(f"Invalid interest rate: {rate!r}")
        self.rate = parsed

    def current_rate(self) -> Decimal:
        return self.rate


class StoredRateProvider(RateProvider):
    """Latest administrator-set rate; falls back to a default when none is set"""

    RECORD_ID = "current"

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 default_rate: Decimal = DEFAULT_INTEREST_RATE):
        self.storage = storage
        self.audit = audit_trail
        self.default_rate = default_rate
        self.table_name = "interest_rates"

    def set_rate(self, rate: Any, description: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Store a new rate, replacing the previous one.

        Raises:
            ValidationError: If the rate is negative or unparseable, or the
                description is empty
        """
        parsed = parse_rate(rate)
        if parsed is None:
            raise ValidationError("Provide a valid non-negative rate", {"rate": str(rate)})
        description = description.strip() if isinstance(description, str) else ""
        if not description:
            raise ValidationError("Description is required")

        record = {
            'id': self.RECORD_ID,
            'rate': str(parsed),
            'description': description,
            'updated_at': datetime.now(timezone.utc).isoformat()
        }
        self.storage.save(self.table_name, self.RECORD_ID, record)

        if self.audit:
            self.audit.log_event(
                AuditEventType.INTEREST_RATE_SET,
                entity_type="interest_rate",
                entity_id=self.RECORD_ID,
                metadata={"rate": parsed, "description": description},
                user_id=user_id
            )
        logger.info(f"Interest rate set to {parsed}")
        return record

    def get_rate_record(self) -> Optional[Dict[str, Any]]:
        return self.storage.load(self.table_name, self.RECORD_ID)

    def current_rate(self) -> Decimal:
        record = self.get_rate_record()
        if record:
            rate = parse_rate(record.get('rate'))
            if rate is not None:
                return rate
        return self.default_rate


class HttpRateProvider(RateProvider):
    """REST client for a remote rate service, with a fixed fallback"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 2.0,
        fallback_rate: Decimal = DEFAULT_INTEREST_RATE,
        api_key: Optional[str] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.fallback_rate = fallback_rate
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout)

    def current_rate(self) -> Decimal:
        """
        Fetch ``GET <base_url>/interest``.

        The body is a JSON object carrying the fraction under "rate" (or
        "amount"). Any transport error, non-200 status or unusable body
        yields the fallback rate.
        """
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._client.get(f"{self.base_url}/interest", headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Rate service connection failed: {e}")
            return self.fallback_rate

        if response.status_code != 200:
            logger.warning(f"Rate service returned {response.status_code}: {response.text}")
            return self.fallback_rate

        try:
            data = response.json()
        except ValueError:
            logger.warning("Rate service returned a non-JSON body")
            return self.fallback_rate

        if not isinstance(data, dict):
            return self.fallback_rate

        rate = parse_rate(data.get("rate", data.get("amount")))
        if rate is None:
            logger.warning(f"Rate service returned an unusable rate: {data!r}")
            return self.fallback_rate
        return rate

    def close(self):
        self._client.close()
