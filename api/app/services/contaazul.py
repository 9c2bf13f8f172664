"""Conta Azul v2 API client — OAuth token calls, paginated list search, installment detail.

All calls are synchronous (Celery tasks) and go through one ``requests.Session``.
Pagination is strictly sequential with a fixed pause between pages; the API
rate-limits aggressively and never benefits from fetching ahead.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import requests

from app.core.config import settings

logger = logging.getLogger(__name__)

RECEIVABLES_ENDPOINT = "/v1/financeiro/eventos-financeiros/contas-a-receber/buscar"
PAYABLES_ENDPOINT = "/v1/financeiro/eventos-financeiros/contas-a-pagar/buscar"
INSTALLMENT_ENDPOINT = "/v1/financeiro/eventos-financeiros/parcelas/{key}"


class ContaAzulError(Exception):
    """Base class for Conta Azul integration failures."""


class AuthError(ContaAzulError):
    """The OAuth server rejected a refresh token or authorization code."""


class TokenInvalidError(ContaAzulError):
    """HTTP 401 from the API — the school must reconnect to Conta Azul."""

    def __init__(self, message: str = "Conta Azul token invalid or expired — reconnection required"):
        super().__init__(message)


class FetchError(ContaAzulError):
    """A list page could not be fetched (non-2xx other than 401, or transport failure)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


class ContaAzulClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        auth_url: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = (base_url or settings.conta_azul_api_url).rstrip("/")
        self.auth_url = auth_url or settings.conta_azul_auth_url
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.session = session or requests.Session()
        self._sleep = sleep

    # ─── OAuth ─────────────────────────────────────────────────────────────

    def refresh_access_token(self, refresh_token: str, client_id: str, client_secret: str) -> TokenPair:
        """Trade a refresh token for a new access/refresh pair."""
        return self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            client_id,
            client_secret,
        )

    def exchange_code(self, code: str, redirect_uri: str, client_id: str, client_secret: str) -> TokenPair:
        """Complete the authorization-code flow after the user approves access."""
        return self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            client_id,
            client_secret,
        )

    def _token_request(self, form: dict[str, str], client_id: str, client_secret: str) -> TokenPair:
        try:
            resp = self.session.post(
                self.auth_url,
                data={**form, "client_id": client_id, "client_secret": client_secret},
                auth=(client_id, client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise FetchError(f"Conta Azul auth server unreachable: {exc}") from exc

        if not resp.ok:
            logger.warning(
                "Conta Azul token request (%s) returned %d: %s",
                form["grant_type"], resp.status_code, resp.text[:200],
            )
            raise AuthError(f"Conta Azul token request failed ({resp.status_code})")

        try:
            body = resp.json()
            return TokenPair(
                access_token=body["access_token"],
                refresh_token=body["refresh_token"],
                expires_in=int(body["expires_in"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthError("Conta Azul token response is missing fields") from exc

    # ─── Paginated search ──────────────────────────────────────────────────

    def fetch_all_pages(
        self,
        endpoint: str,
        access_token: str,
        params: dict[str, str],
        *,
        page_size: int | None = None,
        page_delay: float | None = None,
    ) -> list[dict[str, Any]]:
        """Walk ``pagina`` = 1, 2, ... until a page comes back empty."""
        page_size = page_size or settings.sync_page_size
        page_delay = settings.sync_page_delay_seconds if page_delay is None else page_delay

        items: list[dict[str, Any]] = []
        page = 1
        while True:
            query = {**params, "pagina": str(page), "tamanho_pagina": str(page_size)}
            try:
                resp = self.session.get(
                    f"{self.base_url}{endpoint}",
                    params=query,
                    headers=self._headers(access_token),
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                raise FetchError(f"Conta Azul unreachable on page {page}: {exc}") from exc

            if resp.status_code == 401:
                raise TokenInvalidError()
            if not resp.ok:
                logger.error(
                    "Conta Azul list %s page %d returned %d: %s",
                    endpoint, page, resp.status_code, resp.text[:200],
                )
                raise FetchError(f"Error fetching data: {resp.status_code}", resp.status_code)

            try:
                body = resp.json()
            except ValueError as exc:
                raise FetchError(f"Invalid JSON on page {page} of {endpoint}", resp.status_code) from exc
            if body is not None and not isinstance(body, dict):
                raise FetchError(f"Unexpected body on page {page} of {endpoint}", resp.status_code)

            page_items = (body or {}).get("itens") or []
            if not page_items:
                break
            items.extend(page_items)
            logger.debug("Fetched page %d of %s (%d items)", page, endpoint, len(page_items))
            page += 1
            self._sleep(page_delay)

        return items

    # ─── Installment detail ────────────────────────────────────────────────

    def get_installment(self, key: str, access_token: str) -> requests.Response:
        """Raw detail response; status handling belongs to the caller.

        Raises ``requests.RequestException`` on transport failure.
        """
        return self.session.get(
            f"{self.base_url}{INSTALLMENT_ENDPOINT.format(key=key)}",
            headers=self._headers(access_token),
            timeout=self.timeout,
        )

    @staticmethod
    def _headers(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
