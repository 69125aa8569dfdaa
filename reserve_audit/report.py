import pandas as pd

from reserve_audit.aggregate import AuditResult
from reserve_audit.verify import VerificationResult

COLUMNS = ["token", "required", "actual", "diff", "status"]


def reconciliation_frame(audit: AuditResult, verification: VerificationResult) -> pd.DataFrame:
    """One row per required token. Amounts are kept as strings so 256-bit values survive."""
    checks = {c.token: c for c in verification.checks}
    rows = []
    for token, required in audit.requirement.items():
        check = checks.get(token)
        if check is None:
            rows.append({"token": token, "required": str(required), "actual": "", "diff": "", "status": "missing"})
            continue
        rows.append({
            "token": token,
            "required": str(check.required),
            "actual": str(check.actual),
            "diff": str(check.diff),
            "status": "shortfall" if check.shortfall else "ok",
        })
    return pd.DataFrame(rows, columns=COLUMNS)


def pool_frame(audit: AuditResult) -> pd.DataFrame:
    """Per-pool breakdown: intervals found, legs defaulted to zero and curve discrepancies."""
    rows = [
        {
            "pool": p.pool,
            "intervals": len(p.intervals),
            "fallbacks": len(p.fallbacks),
            "discrepancies": len(p.discrepancies),
        }
        for p in audit.pools
    ]
    return pd.DataFrame(rows, columns=["pool", "intervals", "fallbacks", "discrepancies"])


def write_report(audit: AuditResult, verification: VerificationResult, path: str):
    reconciliation_frame(audit, verification).to_csv(path, index=False)
