"""
Async client for the ledger REST API (Firefly III v1).
All list endpoints are followed through their `links.next` cursor.
"""

from datetime import date
from typing import Any, Optional
import logging

import httpx

from ..config import LedgerConfig
from ..models.transaction import TransactionRecord
from ..utils.exceptions import LedgerError

logger = logging.getLogger(__name__)


class LedgerClient:
    """
    Thin async wrapper around the ledger HTTP API.

    Reads treat a 404 as "nothing there"; every other failure is raised as
    LedgerError so callers can decide whether it is fatal.
    """

    def __init__(
        self,
        config: LedgerConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            config: Ledger connection settings
            transport: Optional httpx transport (used by tests)
        """
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers={
                "Authorization": f"Bearer {config.token}",
                "Accept": "application/vnd.api+json",
            },
            timeout=config.timeout,
            transport=transport,
        )
        logger.info(f"Ledger API client initialized for {config.base_url}")

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search_transactions(
        self, date_after: date, tag_query: Optional[str] = None
    ) -> list[dict]:
        """Search transaction groups dated after a day, optionally restricted to a tag."""
        query = f"date_after:{date_after.isoformat()}"
        if tag_query:
            query = f"{query} tag_is:{tag_query}"
        logger.debug(f"Searching transactions: {query}")
        results = await self._paginate("/api/v1/search/transactions", {"query": query})
        logger.debug(f"Search returned {len(results)} transactions")
        return results

    async def get_all_transactions(self) -> list[dict]:
        """Fetch every transaction group in the ledger."""
        results = await self._paginate("/api/v1/transactions")
        logger.info(f"Retrieved {len(results)} transactions from the ledger")
        return results

    async def get_transactions_by_tag(self, tag: str) -> list[dict]:
        """Fetch the transaction groups carrying a tag (empty when the tag is unknown)."""
        results = await self._paginate(f"/api/v1/tags/{tag}/transactions")
        logger.debug(f"Tag {tag}: {len(results)} transactions")
        return results

    async def get_accounts(self, account_type: Optional[str] = None) -> list[dict]:
        """Fetch ledger accounts, optionally filtered by ledger account type."""
        params = {"type": account_type} if account_type else None
        results = await self._paginate("/api/v1/accounts", params)
        logger.debug(f"Got {len(results)} accounts from the ledger")
        return results

    async def get_config_blob(self, key: str) -> Optional[str]:
        """Read a stored preference value; None when it was never written."""
        try:
            response = await self._client.get(f"/api/v1/preferences/{key}")
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                logger.debug(f"Preference {key} not found (404)")
                return None
            raise self._wrap(e, f"Error reading preference {key}") from e
        except httpx.HTTPError as e:
            raise self._wrap(e, f"Error reading preference {key}") from e
        return response.json()["data"]["attributes"]["data"]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_transaction(self, record: TransactionRecord) -> dict:
        """Store a record as a new single-split transaction group."""
        body = {
            "error_if_duplicate_hash": False,
            "apply_rules": True,
            "transactions": [record.to_ledger_payload()],
        }
        logger.debug(f"Creating transaction {record.external_id}")
        return await self._send("POST", "/api/v1/transactions", body, "Error creating transaction")

    async def update_transaction(self, ledger_id: str, record: TransactionRecord) -> dict:
        """Patch an existing transaction group with the record's fields."""
        body = {"apply_rules": True, "transactions": [record.to_ledger_payload()]}
        logger.debug(f"Updating transaction {ledger_id} ({record.external_id})")
        return await self._send(
            "PUT", f"/api/v1/transactions/{ledger_id}", body, "Error updating transaction"
        )

    async def delete_transaction(self, ledger_id: str) -> None:
        logger.debug(f"Deleting transaction {ledger_id}")
        await self._send("DELETE", f"/api/v1/transactions/{ledger_id}", None, "Error deleting transaction")

    async def create_account(self, spec: dict[str, Any]) -> dict:
        """Create an account and return its resource object."""
        logger.debug(f"Creating account {spec.get('name')}")
        result = await self._send("POST", "/api/v1/accounts", spec, "Error creating account")
        account = result.get("data", {})
        logger.info(f"Account created: {spec.get('name')} (id {account.get('id')})")
        return account

    async def put_config_blob(self, key: str, value: str) -> None:
        """Create or overwrite a stored preference value."""
        try:
            await self._send(
                "POST", "/api/v1/preferences", {"name": key, "data": value}, "Error storing preference"
            )
        except LedgerError as e:
            # Preference names are unique; an existing one must be replaced in place
            if e.status_code != 422:
                raise
            await self._send(
                "PUT", f"/api/v1/preferences/{key}", {"data": value}, "Error storing preference"
            )
        logger.debug(f"Preference {key} stored")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _paginate(self, url: str, params: Optional[dict[str, Any]] = None) -> list[dict]:
        """
        Collect every page of a list endpoint.

        Args:
            url: Endpoint path
            params: Extra query parameters for the first page

        Returns:
            Concatenated `data` items (empty on 404)
        """
        items: list[dict] = []
        first_params = {"limit": self.config.page_limit, **(params or {})}
        next_page: Optional[str] = url
        page_count = 0

        while next_page:
            page_count += 1
            try:
                response = await self._client.get(
                    next_page, params=first_params if page_count == 1 else None
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    logger.debug(f"No results for {url} (404)")
                    return []
                logger.error(f"Error during pagination of {url}: {e}")
                raise self._wrap(e, f"Error fetching {url}") from e
            except httpx.HTTPError as e:
                logger.error(f"Error during pagination of {url}: {e}")
                raise self._wrap(e, f"Error fetching {url}") from e

            payload = response.json()
            page_items = payload.get("data") or []
            items.extend(page_items)
            next_page = (payload.get("links") or {}).get("next")
            logger.debug(
                f"Page {page_count} of {url}: {len(page_items)} items, "
                f"{len(items)} so far, more={bool(next_page)}"
            )

        return items

    async def _send(
        self, method: str, url: str, body: Optional[dict[str, Any]], error_message: str
    ) -> dict:
        try:
            response = await self._client.request(method, url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise self._wrap(e, error_message) from e
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    @staticmethod
    def _wrap(error: httpx.HTTPError, message: str) -> LedgerError:
        if isinstance(error, httpx.HTTPStatusError):
            detail: Any
            try:
                detail = error.response.json()
            except ValueError:
                detail = error.response.text
            return LedgerError(f"{message}: {error}", error.response.status_code, detail)
        return LedgerError(f"{message}: {error}")
