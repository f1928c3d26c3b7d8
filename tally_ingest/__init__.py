"""
Tally Ingest - Ingestion, reconciliation and validation of Tally data.

Takes Tally XML exports (or rows from the Tally sync API) and reconciles them
into a normalized, tenant-scoped PostgreSQL store.

Key Features:
- Voucher extraction from raw XML with a tolerant regex scanner or lxml
- Auto-creation of masters referenced by vouchers
- Idempotent upserts (inserted / updated / ignored)
- Relationship linking of child rows by voucher number
- Reconciliation of voucher amounts from ledger entries
- Referential-integrity validation with a health score

Usage:
    from tally_ingest import ingest_payload, run_sync, validate

    result = ingest_payload(xml_text, company_id, division_id)
    report = run_sync(company_id, division_id)
    health = validate(company_id, division_id)
"""

__version__ = "1.0.0"
__author__ = "Intelayer"

from .config import IngestConfig
from .ingest import XmlIngestor, ingest_payload
from .sync import FullSync, run_sync
from .validator import IntegrityValidator, validate

__all__ = [
    "FullSync",
    "IngestConfig",
    "IntegrityValidator",
    "XmlIngestor",
    "ingest_payload",
    "run_sync",
    "validate",
    "__version__",
]
