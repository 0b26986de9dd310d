from __future__ import annotations

import json
import logging
import time
from enum import Enum
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import Request, urlopen

from pydantic import BaseModel

from common.campaigns.models import LedgerLinkage

from .config import LedgerConfig, get_ledger_config


logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


class LedgerHttpError(RuntimeError):
    def __init__(self, status: int, message: str, body: str | None = None):
        super().__init__(f"Ledger HTTP {status}: {message}")
        self.status = status
        self.body = body


class AccrualStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class AccrualOutcome(BaseModel):
    status: AccrualStatus
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == AccrualStatus.SUCCESS


def ledger_post(
    config: LedgerConfig,
    path: str,
    payload: dict[str, Any],
    *,
    idempotency_key: str | None = None,
) -> dict[str, Any]:
    """
    POST JSON to the ledger API with retry on throttling, 5xx and network errors.

    Retrying is only safe because every mutating call carries an Idempotency-Key.
    """
    url = _build_url(config.base_url, path)
    data = json.dumps(payload).encode("utf-8")
    retries = 0
    backoff = config.backoff_seconds

    while True:
        req = Request(url, data=data, method="POST")
        req.add_header("Accept", "application/json")
        req.add_header("Content-Type", "application/json")
        req.add_header("Authorization", f"Bearer {config.api_key}")
        if idempotency_key:
            req.add_header("Idempotency-Key", idempotency_key)

        try:
            with urlopen(req, timeout=config.timeout_seconds) as resp:
                raw = resp.read().decode("utf-8")
                return json.loads(raw) if raw.strip() else {}
        except HTTPError as exc:
            body = exc.read().decode("utf-8") if exc.fp else None
            status = exc.code

            if status in _RETRYABLE_STATUSES and retries < config.max_retries:
                logger.warning("Ledger POST %s returned %s; retrying in %.1fs", path, status, backoff)
                time.sleep(backoff)
                retries += 1
                backoff *= 2
                continue

            raise LedgerHttpError(status, exc.reason, body) from exc
        except URLError as exc:
            if retries < config.max_retries:
                logger.warning("Ledger POST %s failed (%s); retrying in %.1fs", path, exc.reason, backoff)
                time.sleep(backoff)
                retries += 1
                backoff *= 2
                continue
            raise LedgerHttpError(0, str(exc)) from exc


def accrue(
    config: LedgerConfig,
    *,
    participant_ref: str,
    point_type_ref: str,
    points: int,
    idempotency_key: str,
) -> AccrualOutcome:
    payload = {
        "participantId": participant_ref,
        "pointTypeId": point_type_ref,
        "amount": points,
        "referenceId": idempotency_key,
    }
    try:
        response = ledger_post(config, config.accrual_path, payload, idempotency_key=idempotency_key)
    except LedgerHttpError as exc:
        if exc.status == 409:
            # Ledger already holds an accrual for this key: the earlier attempt went through.
            logger.info("Ledger reported duplicate accrual for key %s; treating as accepted", idempotency_key)
            return AccrualOutcome(
                status=AccrualStatus.SUCCESS,
                response={"duplicate": True, "body": _maybe_json(exc.body)},
            )
        logger.error(
            "Ledger accrual failed participant=%s points=%s key=%s: %s",
            participant_ref,
            points,
            idempotency_key,
            exc,
        )
        return AccrualOutcome(status=AccrualStatus.FAILED, error=str(exc), response=_maybe_json(exc.body))
    except (OSError, ValueError) as exc:
        # Socket timeouts and undecodable bodies after a request may have reached the ledger.
        logger.error("Ledger accrual errored key=%s: %s", idempotency_key, exc)
        return AccrualOutcome(status=AccrualStatus.FAILED, error=str(exc))

    logger.info("Ledger accrual accepted participant=%s points=%s key=%s", participant_ref, points, idempotency_key)
    return AccrualOutcome(status=AccrualStatus.SUCCESS, response=response)


class LedgerAccrualClient:
    """AccrualClient bound to one campaign's ledger credentials."""

    def __init__(self, config: LedgerConfig) -> None:
        self._config = config

    @classmethod
    def for_linkage(cls, linkage: LedgerLinkage) -> "LedgerAccrualClient":
        return cls(get_ledger_config(linkage))

    def accrue(
        self,
        participant_ref: str,
        point_type_ref: str,
        points: int,
        idempotency_key: str,
    ) -> AccrualOutcome:
        return accrue(
            self._config,
            participant_ref=participant_ref,
            point_type_ref=point_type_ref,
            points=points,
            idempotency_key=idempotency_key,
        )


def _build_url(base_url: str, path: str) -> str:
    normalized_path = path if path.startswith("/") else f"/{path}"
    return urljoin(base_url, normalized_path)


def _maybe_json(body: str | None) -> dict[str, Any] | None:
    if not body:
        return None
    try:
        parsed = json.loads(body)
    except ValueError:
        return {"raw": body}
    return parsed if isinstance(parsed, dict) else {"body": parsed}
