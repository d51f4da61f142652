from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from pydantic import ValidationError

from config import Settings, get_settings
from schemas import (
    ProviderAccount,
    ProviderInstitution,
    ProviderInvestment,
    ProviderInvoice,
    ProviderItem,
    ProviderTransaction,
)

logger = logging.getLogger(__name__)

# Refresh the API key this long before the provider says it expires.
API_KEY_EXPIRY_BUFFER_SECS = 5 * 60
DEFAULT_API_KEY_TTL_SECS = 2 * 60 * 60


class ProviderUnavailable(RuntimeError):
    """The aggregator could not be reached or answered with an error."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class _ApiKey:
    token: str
    expires_at: float


class ProviderClient:
    """Thin client for the open-finance aggregator REST API."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self._api_key: Optional[_ApiKey] = None
        self._lock = threading.Lock()

    # -- auth -------------------------------------------------------------

    def _get_api_key(self) -> str:
        with self._lock:
            now = time.monotonic()
            if self._api_key and self._api_key.expires_at > now + API_KEY_EXPIRY_BUFFER_SECS:
                return self._api_key.token
            if not self.settings.provider_client_id or not self.settings.provider_client_secret:
                raise ProviderUnavailable("Provider credentials are not configured")

            payload = self._send(
                "POST",
                "/auth",
                body={
                    "clientId": self.settings.provider_client_id,
                    "clientSecret": self.settings.provider_client_secret,
                },
                authenticated=False,
            )
            token = payload.get("apiKey") if isinstance(payload, dict) else None
            if not token:
                raise ProviderUnavailable("Provider auth response missing apiKey")
            ttl = payload.get("expiresIn") or DEFAULT_API_KEY_TTL_SECS
            self._api_key = _ApiKey(token=token, expires_at=now + float(ttl))
            logger.info("provider_auth: api_key refreshed")
            return token

    # -- transport --------------------------------------------------------

    def _send(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Any:
        url = f"{self.settings.provider_api_url}{path}"
        if params:
            url = f"{url}?{urlencode(params, doseq=True)}"
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if authenticated:
            headers["X-API-KEY"] = self._get_api_key()
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = Request(url, data=data, headers=headers, method=method)
        try:
            with urlopen(req, timeout=self.settings.provider_timeout_secs) as resp:
                raw = resp.read().decode("utf-8")
        except HTTPError as exc:
            raise ProviderUnavailable(
                f"Provider returned HTTP {exc.code} for {method} {path}", status=exc.code
            ) from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise ProviderUnavailable(f"Provider unreachable for {method} {path}") from exc

        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProviderUnavailable(f"Invalid provider response for {method} {path}") from exc

    def _get_results(
        self, path: str, params: Optional[dict[str, Any]] = None, missing_ok: bool = False
    ) -> list[dict[str, Any]]:
        try:
            payload = self._send("GET", path, params=params)
        except ProviderUnavailable as exc:
            if missing_ok and exc.status == 404:
                logger.info(f"provider_fetch: path={path} status=404 treated_as=empty")
                return []
            raise
        return _results(payload)

    # -- resources --------------------------------------------------------

    def list_institutions(self) -> list[ProviderInstitution]:
        rows = self._get_results(
            "/connectors",
            params={
                "countries": "BR",
                "products": ["ACCOUNTS", "CREDIT_CARDS", "INVESTMENTS", "TRANSACTIONS"],
            },
        )
        return [_parse(ProviderInstitution, row) for row in rows]

    def get_item(self, item_id: str) -> ProviderItem:
        payload = self._send("GET", f"/items/{quote(item_id, safe='')}")
        return _parse(ProviderItem, payload)

    def get_accounts(self, item_id: str) -> list[ProviderAccount]:
        rows = self._get_results("/accounts", params={"itemId": item_id})
        return [_parse(ProviderAccount, row) for row in rows]

    def get_transactions(
        self, account_id: str, page_size: Optional[int] = None
    ) -> list[ProviderTransaction]:
        size = page_size or self.settings.transactions_page_size
        page = 1
        out: list[ProviderTransaction] = []
        while True:
            payload = self._send(
                "GET",
                "/transactions",
                params={"accountId": account_id, "pageSize": size, "page": page},
            )
            out.extend(_parse(ProviderTransaction, row) for row in _results(payload))
            total_pages = 1
            if isinstance(payload, dict):
                total_pages = int(payload.get("totalPages") or 1)
            if page >= total_pages:
                break
            page += 1
        return out

    def get_credit_cards(self, item_id: str) -> list[ProviderAccount]:
        try:
            accounts = self.get_accounts(item_id)
        except ProviderUnavailable as exc:
            if exc.status == 404:
                return []
            raise
        return [account for account in accounts if account.is_credit_card]

    def get_card_invoices(self, card_id: str) -> list[ProviderInvoice]:
        rows = self._get_results(
            "/credit-cards/invoices", params={"creditCardId": card_id}, missing_ok=True
        )
        return [_parse(ProviderInvoice, row) for row in rows]

    def get_investments(self, item_id: str) -> list[ProviderInvestment]:
        rows = self._get_results(
            "/investments", params={"itemId": item_id}, missing_ok=True
        )
        return [_parse(ProviderInvestment, row) for row in rows]

    def update_item(self, item_id: str) -> Optional[ProviderItem]:
        payload = self._send("PATCH", f"/items/{quote(item_id, safe='')}", body={})
        if not payload:
            return None
        return _parse(ProviderItem, payload)

    def delete_item(self, item_id: str) -> None:
        self._send("DELETE", f"/items/{quote(item_id, safe='')}")


def _results(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        results = payload.get("results")
        return list(results) if isinstance(results, list) else []
    if isinstance(payload, list):
        return payload
    return []


def _parse(model, payload: Any):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ProviderUnavailable(
            f"Unexpected provider payload for {model.__name__}"
        ) from exc
