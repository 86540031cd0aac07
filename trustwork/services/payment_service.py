# trustwork/services/payment_service.py
"""Payment gateway client.

Commands: create_hold, capture, refund, payout. Every command carries our
correlation id as the merchant reference. Retryable failures (network,
timeouts, HTTP 5xx/429) are retried with jittered exponential backoff and
then surface as GatewayError(retryable=True).
"""
from __future__ import annotations
import hashlib, hmac, json, logging, random, time
from decimal import Decimal
from urllib.parse import quote_plus

import requests
from flask import current_app

from ..errors import GatewayError
from ..utils import money_str
from .tx import operation_memo

log = logging.getLogger(__name__)

_RETRY_STATUS = {429, 500, 502, 503, 504}


def _base_url() -> str:
    return current_app.config.get("GATEWAY_BASE_URL", "").rstrip("/")


def idempotency_key(command: str, payload: dict) -> str:
    """Same command with the same payload, same key; the provider drops repeats."""
    raw = json.dumps({"command": command, "payload": payload}, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _headers(payload: dict, key: str) -> dict:
    return {
        "Idempotency-Key": key,
        "Accept": "application/json",
        "Content-Type": "application/json",
        "merchant-id": current_app.config.get("GATEWAY_MERCHANT_ID") or "",
        "signature": sign(payload),
    }


def _backoff(attempt: int) -> float:
    base = current_app.config.get("GATEWAY_BACKOFF_SECONDS", 0.5)
    return base * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def _send(command: str, path: str, payload: dict, *, correlation_id: str) -> dict:
    key = idempotency_key(command, payload)
    memo = operation_memo()
    sent = memo.setdefault("gateway", {}) if memo is not None else None
    if sent is not None and key in sent:
        log.info("gateway %s ref=%s already sent by this operation, replaying response", command, correlation_id)
        return sent[key]
    result = _post(command, path, payload, correlation_id=correlation_id, key=key)
    if sent is not None:
        sent[key] = result
    return result


def _post(command: str, path: str, payload: dict, *, correlation_id: str, key: str) -> dict:
    if current_app.config.get("GATEWAY_DRY_RUN"):
        log.info("[GATEWAY_DRY_RUN=1] would send %s ref=%s payload=%s", command, correlation_id, payload)
        return {"dry_run": True, "command": command, "correlation_id": correlation_id}

    url = f"{_base_url()}/{path.lstrip('/')}"
    timeout = current_app.config.get("GATEWAY_TIMEOUT", 20)
    max_tries = max(1, int(current_app.config.get("GATEWAY_MAX_RETRIES", 3)))
    last_error = None

    for attempt in range(1, max_tries + 1):
        try:
            r = requests.post(url, json=payload, headers=_headers(payload, key), timeout=timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            last_error = f"{type(e).__name__}: {e}"
            log.warning("gateway %s ref=%s attempt %s/%s failed: %s",
                        command, correlation_id, attempt, max_tries, last_error)
        else:
            log.info("gateway %s ref=%s status=%s", command, correlation_id, r.status_code)
            if r.status_code in _RETRY_STATUS:
                last_error = f"HTTP {r.status_code}"
                log.warning("gateway %s ref=%s attempt %s/%s got %s",
                            command, correlation_id, attempt, max_tries, r.status_code)
            elif r.status_code >= 400:
                log.error("gateway %s ref=%s rejected | status=%s body=%s",
                          command, correlation_id, r.status_code, r.text[:500])
                raise GatewayError(
                    f"Payment provider rejected {command}",
                    retryable=False,
                    correlation_id=correlation_id,
                    details={"status": r.status_code},
                )
            else:
                try:
                    return r.json()
                except ValueError:
                    return {"raw": r.text}
        if attempt < max_tries:
            time.sleep(_backoff(attempt))

    raise GatewayError(
        f"Payment provider unavailable for {command}",
        retryable=True,
        correlation_id=correlation_id,
        details={"attempts": max_tries, "last_error": last_error},
    )


# -----------------
# Commands
# -----------------

def create_hold(*, correlation_id: str, amount: Decimal, currency: str,
                description: str = "", payer_email: str = "") -> dict:
    payload = {
        "merchant_id": current_app.config.get("GATEWAY_MERCHANT_ID"),
        "m_payment_id": correlation_id,
        "amount": money_str(amount),
        "currency": (currency or "ZAR").upper(),
        "item_name": (description or "Escrow")[:100],
        "email_address": payer_email or None,
    }
    return _send("create_hold", "/holds", payload, correlation_id=correlation_id)


def capture(*, correlation_id: str, amount: Decimal) -> dict:
    payload = {"m_payment_id": correlation_id, "amount": money_str(amount)}
    return _send("capture", "/holds/capture", payload, correlation_id=correlation_id)


def refund(*, correlation_id: str, amount: Decimal, reason: str = "") -> dict:
    payload = {"m_payment_id": correlation_id, "amount": money_str(amount), "reason": (reason or "")[:255]}
    return _send("refund", "/refunds", payload, correlation_id=correlation_id)


def payout(*, correlation_id: str, amount: Decimal, currency: str, recipient_id) -> dict:
    payload = {
        "m_payment_id": correlation_id,
        "amount": money_str(amount),
        "currency": (currency or "ZAR").upper(),
        "recipient": str(recipient_id),
    }
    return _send("payout", "/payouts", payload, correlation_id=correlation_id)


# -----------------
# Notification signatures
# -----------------

def signature_base(fields: dict, passphrase: str | None = None) -> str:
    """Sorted ``key=value`` pairs, URL-encoded, empty values and ``signature`` skipped."""
    parts = []
    for key in sorted(fields):
        if key == "signature":
            continue
        val = fields[key]
        if val is None:
            continue
        val = str(val).strip()
        if val == "":
            continue
        parts.append(f"{key}={quote_plus(val)}")
    if passphrase:
        parts.append(f"passphrase={quote_plus(passphrase.strip())}")
    return "&".join(parts)


def sign(fields: dict, passphrase: str | None = None) -> str:
    if passphrase is None:
        passphrase = current_app.config.get("GATEWAY_PASSPHRASE") or ""
    return hashlib.md5(signature_base(fields, passphrase).encode("utf-8")).hexdigest()


def verify_signature(fields: dict) -> bool:
    given = str(fields.get("signature") or "")
    if not given:
        return False
    return hmac.compare_digest(sign(fields), given.lower())
