"""
Shared fixtures: an in-memory record store and sample invoice data.
"""

import json
import re
from collections import defaultdict
from typing import Optional, List, Dict, Any, Tuple
from unittest.mock import AsyncMock

import pytest

from ap_recon.exceptions import RecordStoreError
from ap_recon.schemas.records import StoreRecord, Table, FileField
from ap_recon.schemas.matching import POMatchingResponse
from ap_recon.store.airtable import check_writable


class FakeRecordStore:
    """
    In-memory stand-in for AirtableStore.

    Understands the formula shapes the engine produces: RECORD_ID() lists,
    NOT({Cleared}) and {Field}="value" equality. Failures are injected per
    (method, table) through `failures`.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.calls: List[Tuple[str, str, Any]] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self._next_id = 0

    def add(self, table: str, record_id: str, fields: Dict[str, Any]) -> None:
        self.tables[table][record_id] = dict(fields)

    def fields(self, table: str, record_id: str) -> Dict[str, Any]:
        return self.tables[table][record_id]

    def _check_failure(self, method: str, table: str) -> None:
        error = self.failures.get((method, table))
        if error is not None:
            raise error

    def _new_id(self, table: str) -> str:
        self._next_id += 1
        return f"rec{table}{self._next_id}"

    async def get(self, table: str, record_id: str) -> Optional[StoreRecord]:
        self.calls.append(("get", table, record_id))
        self._check_failure("get", table)
        fields = self.tables[table].get(record_id)
        if fields is None:
            return None
        return StoreRecord(id=record_id, fields=dict(fields))

    def _matches(self, record_id: str, fields: Dict[str, Any], formula: Optional[str]) -> bool:
        if not formula:
            return True
        ids = re.findall(r'RECORD_ID\(\)="([^"]*)"', formula)
        if ids and record_id not in ids:
            return False
        if f"NOT({{{FileField.CLEARED}}})" in formula and fields.get(FileField.CLEARED):
            return False
        for name, value in re.findall(r'\{([^}]+)\}="([^"]*)"', formula):
            if str(fields.get(name)) != value:
                return False
        return True

    async def list(
        self,
        table: str,
        filter_formula: Optional[str] = None,
        sort: Optional[List[Dict[str, str]]] = None,
        fields: Optional[List[str]] = None,
        max_records: Optional[int] = None,
    ) -> List[StoreRecord]:
        self.calls.append(("list", table, filter_formula))
        self._check_failure("list", table)
        records = [
            StoreRecord(id=rid, fields=dict(f))
            for rid, f in self.tables[table].items()
            if self._matches(rid, f, filter_formula)
        ]
        for order in reversed(sort or []):
            records.sort(
                key=lambda r: str(r.fields.get(order["field"], "")),
                reverse=order.get("direction") == "desc",
            )
        if max_records:
            records = records[:max_records]
        return records

    async def create(self, table: str, records: List[Dict[str, Any]]) -> List[StoreRecord]:
        self.calls.append(("create", table, records))
        self._check_failure("create", table)
        created = []
        for fields in records:
            check_writable(table, fields)
            record_id = self._new_id(table)
            self.tables[table][record_id] = dict(fields)
            created.append(StoreRecord(id=record_id, fields=dict(fields)))
        return created

    async def update(self, table: str, records: List[Tuple[str, Dict[str, Any]]]) -> List[StoreRecord]:
        self.calls.append(("update", table, records))
        self._check_failure("update", table)
        updated = []
        for record_id, fields in records:
            check_writable(table, fields)
            current = self.tables[table].setdefault(record_id, {})
            for name, value in fields.items():
                if value is None:
                    current.pop(name, None)
                else:
                    current[name] = value
            updated.append(StoreRecord(id=record_id, fields=dict(current)))
        return updated

    async def update_one(self, table: str, record_id: str, fields: Dict[str, Any]) -> StoreRecord:
        records = await self.update(table, [(record_id, fields)])
        return records[0]

    def created(self, table: str) -> List[Dict[str, Any]]:
        """Field maps passed to create() for a table, in call order."""
        return [f for method, t, recs in self.calls if method == "create" and t == table for f in recs]


@pytest.fixture
def store():
    return FakeRecordStore()


@pytest.fixture
def store_factory():
    return FakeRecordStore


@pytest.fixture
def match_payload():
    """Vendor metadata plus two receipt candidates."""
    return {
        "vendor": {
            "vendId": "ACME001",
            "apAcct": "2000",
            "apSub": "00",
            "freightAccount": "5100",
            "freightSubAccount": "10",
            "miscChargeAccount": "5200",
            "miscChargeSubAccount": "20",
            "ppvVoucheredAcct": "5900",
            "ppvVoucheredSubAcct": "90",
        },
        "matchingReceipts": [
            {
                "itemNo": "WIDGET-100",
                "itemDescription": "Industrial Widget Type A",
                "poLineNumber": "001",
                "poReleaseNumber": "0",
                "vendorShipNumber": "SHIP-1",
                "dateReceived": "2025-01-20",
                "quantityReceived": 50,
                "quantityAccepted": 50,
                "purchasePrice": 25.0,
                "pricingQuantity": 50,
                "expAcct": "5000",
                "expSub": "100",
                "standardCost": 24.5,
                "uom": "EA",
            },
            {
                "itemNo": "WIDGET-200",
                "itemDescription": "Industrial Widget Type B",
                "poLineNumber": "002",
                "dateReceived": "2025-01-20",
                "quantityReceived": 25,
                "quantityAccepted": 25,
                "purchasePrice": 40.0,
                "expAcct": "5000",
                "expSub": "100",
                "uom": "EA",
            },
        ],
    }


@pytest.fixture
def invoice_fields(match_payload):
    """Invoice whose lines match both receipts exactly: 50 x 25 + 25 x 40 + charges."""
    return {
        "Invoice-Number": "INV-2025-001",
        "Vendor-Name": "Acme Manufacturing Inc",
        "VendId": "ACME001",
        "Amount": 2450.75,
        "Date": "2025-01-15",
        "Freight-Charge": 125.50,
        "Misc-Charge": 50.00,
        "Surcharge": 25.25,
        "Status": "Pending",
        "Files": ["recFile1"],
        "MatchPayloadJSON": json.dumps(match_payload),
    }


@pytest.fixture
def llm_response_data():
    """One header, two invoice lines, each matched to one receipt."""
    return {
        "headers": [
            {
                "Company-Code": "ACOM",
                "VendId": "ACME001",
                "TermsId": "NET30",
                "TermsDaysInt": 30,
                "APAcct": "2000",
                "APSub": "00",
                "Freight-Account": "5100",
                "Freight-Subaccount": "10",
                "Misc-Charge-Account": "5200",
                "Misc-Charge-Subaccount": "20",
                "PO-Number-Seq-Type": "STD",
                "PO-Number": "PO-2025-001",
                "PO-Vendor": "Acme Manufacturing Inc",
                "CuryId": "USD",
                "CuryRate": 1.0,
                "CuryRateType": "SPOT",
                "User-Id": "model-made-this-up",
                "Job-Project-Number": "",
                "details": [
                    [{"match_object": 0, "invoice_price": 25.0, "invoice_quantity": 50, "invoice_amount": 1250.0}],
                    [{"match_object": 1, "invoice_price": 40.0, "invoice_quantity": 25, "invoice_amount": 1000.0}],
                ],
            }
        ],
        "error": "",
    }


@pytest.fixture
def llm_response(llm_response_data):
    return POMatchingResponse.model_validate(llm_response_data)


@pytest.fixture
def mock_extractor(llm_response):
    """Extractor whose extract() returns the sample response."""
    extractor = AsyncMock()
    extractor.extract = AsyncMock(return_value=llm_response)
    return extractor


@pytest.fixture
def store_error():
    return RecordStoreError("Service unavailable", table=Table.DETAILS, status_code=503)
