"""
Verify the reconciliation audit chain.

Walks recon_audit_trail from the genesis event in seq order and recomputes
every hash. Exits non-zero at the first break.

Run this script directly:
    cd backend && python -m reconciliation.tools.verify_audit_chain
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from database.connection import AsyncSessionLocal
from reconciliation.audit_trail import AuditTrailWriter


async def verify_audit_chain(batch_size: int = 1000) -> dict:
    async with AsyncSessionLocal() as db:
        return await AuditTrailWriter(db).verify(batch_size=batch_size)


def main() -> int:
    print("Verifying reconciliation audit chain...")
    result = asyncio.run(verify_audit_chain())

    if result["valid"]:
        print(f"  ✓ {result['events_verified']} events verified")
        print(f"  ✓ head hash: {result['head_hash'] or '(empty chain)'}")
        return 0

    error = result["error"]
    print(f"  ✗ chain broken at seq {error['seq']} ({error['reason']})")
    print(f"    expected: {error['expected']}")
    print(f"    actual:   {error['actual']}")
    print(f"    {result['events_verified']} events verified before the break")
    return 1


if __name__ == "__main__":
    sys.exit(main())
