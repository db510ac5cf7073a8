# oracle_cards/remote_api/client.py
#
#
# Imports
import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List
#
# 3rd-party Libraries
import httpx
from pydantic import ValidationError
#
# Local Imports
from oracle_cards.Constants import TABLE_CARDS, TABLE_PROFILES
from oracle_cards.DB.entities import ensure_utc, utc_now
from .exceptions import TransportError, RejectedError, AuthenticationError
from .gateway import RemoteGateway
from .schemas import DeltaRequest, DeltaResponse, PushOperation
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

DELTA_ENDPOINT = "/functions/v1/sync-delta"


class HTTPRemoteGateway(RemoteGateway):
    """
    Gateway for a PostgREST-style backend (`/rest/v1/{table}`) with an optional
    `sync-delta` edge function. Row-level security on the server does the
    ownership enforcement; the owner filters here only narrow the queries.
    """

    def __init__(self, base_url: str, anon_key: str, access_token: Optional[str] = None, timeout: float = 30.0,
                 use_delta_endpoint: bool = True, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.anon_key = anon_key
        self.access_token = access_token
        self.timeout = timeout
        self.use_delta_endpoint = use_delta_endpoint
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def supports_delta(self) -> bool:
        return self.use_delta_endpoint

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {
                "apikey": self.anon_key,
                "Authorization": f"Bearer {self.access_token or self.anon_key}",
                "Content-Type": "application/json",
            }
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def set_access_token(self, access_token: Optional[str]):
        """Swaps the session token (e.g. after a refresh); the next request uses a fresh client."""
        self.access_token = access_token
        await self.close()

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        client = await self._get_client()
        url = f"{self.base_url}{endpoint}"

        try:
            response = await client.request(method, endpoint, params=params, json=json_body, headers=headers)
            response.raise_for_status()  # Raises HTTPStatusError for 4xx/5xx
            if not response.content:
                return None
            return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            error_detail = str(e)
            response_data = None
            try:
                response_data = e.response.json()
                if isinstance(response_data, dict):
                    # PostgREST uses "message"; edge functions use "error"
                    for key in ("message", "error", "detail"):
                        if isinstance(response_data.get(key), str):
                            error_detail = response_data[key]
                            break
            except ValueError:
                pass  # Body is not JSON

            logger.warning(f"{method} {endpoint} failed with HTTP {status}: {error_detail}")
            if status == 401:
                raise AuthenticationError(f"Authentication failed: {error_detail}", status_code=status,
                                          response_data=response_data) from e
            if status in (408, 429) or status >= 500:
                raise TransportError(f"Server error {status} from {url}: {error_detail}") from e
            raise RejectedError(error_detail, status_code=status, response_data=response_data) from e
        except httpx.RequestError as e:  # Covers ConnectError, TimeoutException, etc.
            logger.warning(f"Connection error to {url}: {e}")
            raise TransportError(f"Connection error to {url}: {e}") from e
        except json.JSONDecodeError as e:
            raise TransportError(f"Failed to decode JSON response from {url}: {e}") from e

    # --- Per-table operations ---
    async def fetch_updated_since(self, table: str, since: Optional[datetime], owner_id: str) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"select": "*", "order": "updated_at.asc"}
        if table == TABLE_CARDS:
            # Cards carry no user_id; scope them through the owning deck.
            params["select"] = "*,decks!inner(user_id)"
            params["decks.user_id"] = f"eq.{owner_id}"
        elif table == TABLE_PROFILES:
            params["id"] = f"eq.{owner_id}"
        else:
            params["user_id"] = f"eq.{owner_id}"
        if since is not None:
            params["updated_at"] = f"gte.{ensure_utc(since).isoformat()}"
        else:
            params["is_deleted"] = "eq.false"

        rows = await self._request("GET", f"/rest/v1/{table}", params=params)
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise TransportError(f"Unexpected response shape fetching {table}: {type(rows).__name__}")
        logger.debug(f"Fetched {len(rows)} {table} row(s) updated since {since}.")
        return rows

    async def upsert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        result = await self._request(
            "POST", f"/rest/v1/{table}",
            params={"on_conflict": "id"},
            json_body=row,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        if isinstance(result, list):
            return result[0] if result else row
        return result or row

    async def delete(self, table: str, record_id: str, deleted_at: Optional[datetime] = None) -> None:
        tombstone = {"is_deleted": True, "updated_at": ensure_utc(deleted_at or utc_now()).isoformat()}
        await self._request(
            "PATCH", f"/rest/v1/{table}",
            params={"id": f"eq.{record_id}"},
            json_body=tombstone,
            headers={"Prefer": "return=minimal"},
        )

    # --- Delta endpoint ---
    async def sync_delta(self, pull_since: Optional[datetime], push_ops: List[PushOperation]) -> DeltaResponse:
        if not self.use_delta_endpoint:
            return await super().sync_delta(pull_since, push_ops)
        request = DeltaRequest(pull_since=pull_since, push_ops=push_ops)
        payload = await self._request("POST", DELTA_ENDPOINT, json_body=request.to_payload())
        if not isinstance(payload, dict):
            raise TransportError("Delta endpoint returned an empty or non-object response.")
        try:
            return DeltaResponse.from_payload(payload)
        except ValidationError as e:
            raise TransportError(f"Malformed delta response: {e}") from e

#
# End of oracle_cards/remote_api/client.py
########################################################################################################################
