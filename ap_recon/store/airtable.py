"""
Record Store Client.
Async get/list/create/update against Airtable tables, with formula filters,
field projections and the writable-field allow-lists enforced at the boundary.
"""

from typing import Optional, List, Dict, Any, Tuple, Iterable

import httpx
from pydantic import ValidationError

from ap_recon.exceptions import RecordStoreError, WritableFieldError
from ap_recon.schemas.records import StoreRecord, WRITABLE_FIELDS, FileField
from ap_recon.utils.logging import setup_logging
from ap_recon.config import get_config


logger = setup_logging(__name__)
config = get_config()


# ---------------------------------------------------------------------------
# Formula helpers
# ---------------------------------------------------------------------------

def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def record_id_in(record_ids: Iterable[str]) -> str:
    """OR(RECORD_ID()="a",RECORD_ID()="b"); FALSE() for an empty list."""
    clauses = [f"RECORD_ID()={_quote(rid)}" for rid in record_ids]
    if not clauses:
        return "FALSE()"
    if len(clauses) == 1:
        return clauses[0]
    return f"OR({','.join(clauses)})"


def field_equals(field: str, value: Any) -> str:
    if isinstance(value, bool):
        return f"{{{field}}}={'TRUE()' if value else 'FALSE()'}"
    if isinstance(value, (int, float)):
        return f"{{{field}}}={value}"
    return f"{{{field}}}={_quote(str(value))}"


def is_after(field: str, iso_timestamp: str) -> str:
    return f"IS_AFTER({{{field}}}, {_quote(iso_timestamp)})"


def not_cleared() -> str:
    return f"NOT({{{FileField.CLEARED}}})"


def and_(*clauses: str) -> str:
    parts = [c for c in clauses if c]
    if not parts:
        return "TRUE()"
    if len(parts) == 1:
        return parts[0]
    return f"AND({','.join(parts)})"


def check_writable(table: str, fields: Dict[str, Any]) -> None:
    """Raise WritableFieldError if a write targets fields outside the table's allow-list."""
    allowed = WRITABLE_FIELDS.get(table)
    if allowed is None:
        return
    unknown = [name for name in fields if name not in allowed]
    if unknown:
        raise WritableFieldError(table, unknown)


def _chunks(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class AirtableStore:
    """
    Async Airtable REST client.

    Every call is a suspension point; nothing is cached between calls.
    Non-2xx responses and transport failures raise RecordStoreError, except
    a 404 on `get`, which returns None.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_id: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        batch_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if api_key is None or base_id is None:
            config.require_store_credentials()
        self.api_key = api_key or config.AIRTABLE_API_KEY
        self.base_id = base_id or config.AIRTABLE_BASE_ID
        self.api_url = (api_url or config.AIRTABLE_API_URL).rstrip("/")
        self.batch_size = batch_size or config.AIRTABLE_BATCH_SIZE
        self._client = httpx.AsyncClient(
            base_url=f"{self.api_url}/{self.base_id}/",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout or config.AIRTABLE_TIMEOUT,
            transport=transport,
        )

    async def __aenter__(self) -> "AirtableStore":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        table: str,
        path: str = "",
        params: Optional[List[Tuple[str, Any]]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        url = httpx.URL(table + (f"/{path}" if path else ""))
        logger.debug(f"[AirtableStore] {method} {table}{'/' + path if path else ''}")
        try:
            return await self._client.request(method, url, params=params, json=json)
        except httpx.HTTPError as e:
            raise RecordStoreError(f"{method} request failed: {e}", table=table) from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, table: str) -> None:
        if response.status_code < 400:
            return
        try:
            body = response.json()
            error = body.get("error", {}) if isinstance(body, dict) else None
            message = error.get("message") if isinstance(error, dict) else (str(error) if error else None)
        except ValueError:
            message = None
        raise RecordStoreError(message or response.text or "request failed", table=table, status_code=response.status_code)

    @staticmethod
    def _body(response: httpx.Response, table: str) -> Dict[str, Any]:
        """Decoded JSON object of a successful response."""
        try:
            body = response.json()
        except ValueError as e:
            raise RecordStoreError(
                f"Malformed response body: {response.text[:200]!r}",
                table=table,
                status_code=response.status_code,
            ) from e
        if not isinstance(body, dict):
            raise RecordStoreError(
                f"Expected a JSON object, got {type(body).__name__}",
                table=table,
                status_code=response.status_code,
            )
        return body

    @staticmethod
    def _validate(raw: Any, table: str) -> StoreRecord:
        try:
            return StoreRecord.model_validate(raw)
        except ValidationError as e:
            raise RecordStoreError(f"Unexpected record shape: {e.error_count()} error(s)", table=table) from e

    def _records(self, body: Dict[str, Any], table: str) -> List[StoreRecord]:
        records = body.get("records", [])
        if not isinstance(records, list):
            raise RecordStoreError("Expected a records list", table=table)
        return [self._validate(r, table) for r in records]

    async def get(self, table: str, record_id: str) -> Optional[StoreRecord]:
        """Fetch one record by id; None when it does not exist."""
        response = await self._send("GET", table, record_id)
        if response.status_code == 404:
            return None
        self._raise_for_status(response, table)
        return self._validate(self._body(response, table), table)

    async def list(
        self,
        table: str,
        filter_formula: Optional[str] = None,
        sort: Optional[List[Dict[str, str]]] = None,
        fields: Optional[List[str]] = None,
        max_records: Optional[int] = None,
    ) -> List[StoreRecord]:
        """
        List records, following `offset` pagination.

        Args:
            filter_formula: Airtable formula, e.g. and_(not_cleared(), field_equals(...))
            sort: [{"field": "Created-At", "direction": "desc"}]
            fields: projection; only these fields are returned
            max_records: stop after this many records
        """
        base_params: List[Tuple[str, Any]] = []
        if filter_formula:
            base_params.append(("filterByFormula", filter_formula))
        if max_records:
            base_params.append(("maxRecords", max_records))
        for name in fields or []:
            base_params.append(("fields[]", name))
        for i, order in enumerate(sort or []):
            base_params.append((f"sort[{i}][field]", order["field"]))
            base_params.append((f"sort[{i}][direction]", order.get("direction", "asc")))

        results: List[StoreRecord] = []
        offset = None
        while True:
            params = list(base_params)
            if offset:
                params.append(("offset", offset))
            response = await self._send("GET", table, params=params)
            self._raise_for_status(response, table)
            body = self._body(response, table)
            results.extend(self._records(body, table))
            offset = body.get("offset")
            if not offset or (max_records and len(results) >= max_records):
                break

        if max_records:
            results = results[:max_records]
        return results

    async def create(self, table: str, records: List[Dict[str, Any]]) -> List[StoreRecord]:
        """Create records (field maps) in batches; results keep request order."""
        for fields in records:
            check_writable(table, fields)

        created: List[StoreRecord] = []
        for batch in _chunks(records, self.batch_size):
            payload = {"records": [{"fields": fields} for fields in batch]}
            response = await self._send("POST", table, json=payload)
            self._raise_for_status(response, table)
            batch_records = self._records(self._body(response, table), table)
            if len(batch_records) != len(batch):
                raise RecordStoreError(
                    f"Created {len(batch_records)} of {len(batch)} records",
                    table=table,
                    status_code=response.status_code,
                )
            created.extend(batch_records)

        logger.debug(f"[AirtableStore] Created {len(created)} record(s) in {table}")
        return created

    async def update(self, table: str, records: List[Tuple[str, Dict[str, Any]]]) -> List[StoreRecord]:
        """Partial patch of (record_id, fields) pairs."""
        for _, fields in records:
            check_writable(table, fields)

        updated: List[StoreRecord] = []
        for batch in _chunks(records, self.batch_size):
            payload = {"records": [{"id": rid, "fields": fields} for rid, fields in batch]}
            response = await self._send("PATCH", table, json=payload)
            self._raise_for_status(response, table)
            updated.extend(self._records(self._body(response, table), table))
        return updated

    async def update_one(self, table: str, record_id: str, fields: Dict[str, Any]) -> StoreRecord:
        records = await self.update(table, [(record_id, fields)])
        if not records:
            raise RecordStoreError(f"Update of {record_id} returned no record", table=table)
        return records[0]
