"""
File Adapter registry.

Adapters are stateless functions registered against the adapter_class named
in a supplier config:

    @register_adapter("mobilemart")
    def parse_mobilemart(content: str, config: SupplierConfig) -> ParsedFile: ...

parse_file() is the single entry point used by the run orchestrator. It
decodes the raw bytes, dispatches to the adapter, and enforces the
rejected-record ceiling.
"""

import logging
from typing import Callable, Dict, List, Tuple

from reconciliation.exceptions import ConfigurationMissing, SchemaMismatch
from reconciliation.models import SupplierRecord, ParseReport
from reconciliation.supplier_registry import SupplierConfig
from reconciliation.adapters.schema import decode_content

logger = logging.getLogger(__name__)

ParsedFile = Tuple[List[SupplierRecord], ParseReport]
AdapterFunc = Callable[[str, SupplierConfig], ParsedFile]

DEFAULT_MAX_REJECTION_RATIO = 0.05

ADAPTERS: Dict[str, AdapterFunc] = {}


def register_adapter(name: str) -> Callable[[AdapterFunc], AdapterFunc]:
    """Register an adapter function under an adapter_class key."""
    def decorator(func: AdapterFunc) -> AdapterFunc:
        if name in ADAPTERS and ADAPTERS[name] is not func:
            raise ValueError(f"Adapter '{name}' already registered")
        ADAPTERS[name] = func
        return func
    return decorator


def get_adapter(adapter_class: str) -> AdapterFunc:
    try:
        return ADAPTERS[adapter_class]
    except KeyError:
        raise ConfigurationMissing(
            adapter_class,
            f"No file adapter registered for adapter_class '{adapter_class}'"
        )


def parse_file(
    raw_bytes: bytes,
    config: SupplierConfig,
    max_rejection_ratio: float = DEFAULT_MAX_REJECTION_RATIO
) -> ParsedFile:
    """
    Parse a raw supplier file into normalised records.

    Returns:
        (records, ParseReport)

    Raises:
        SchemaMismatch: unreadable layout, no body records, or the share of
            rejected records above max_rejection_ratio
    """
    adapter = get_adapter(config.adapter_class)
    content = decode_content(raw_bytes, config.encoding)

    records, report = adapter(content, config)

    if report.accepted == 0 and not report.rejected:
        raise SchemaMismatch("File contains no transaction records", report.to_dict())

    if report.rejection_ratio > max_rejection_ratio:
        logger.warning(
            f"Rejection ceiling breached for {config.supplier_code}: "
            f"{len(report.rejected)} of {report.accepted + len(report.rejected)} records rejected"
        )
        raise SchemaMismatch(
            f"Rejected record ratio {report.rejection_ratio:.2%} exceeds "
            f"ceiling {max_rejection_ratio:.2%}",
            report.to_dict()
        )

    if config.file_schema.get("strict_totals") and report.file_discrepancies:
        raise SchemaMismatch(
            f"Declared totals disagree with file body ({len(report.file_discrepancies)} mismatches)",
            report.to_dict()
        )

    logger.info(
        f"Parsed {config.supplier_code} file with {config.adapter_class}",
        extra={
            "supplier_code": config.supplier_code,
            "accepted": report.accepted,
            "rejected": len(report.rejected),
            "file_discrepancies": len(report.file_discrepancies),
        }
    )
    return records, report
