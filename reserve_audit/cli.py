import argparse
import asyncio
import logging
import sys

from web3 import AsyncHTTPProvider, AsyncWeb3

from reserve_audit import config
from reserve_audit.aggregate import audit_pools
from reserve_audit.curve import UNISWAP_V4_CURVE, TickOutOfBounds
from reserve_audit.errors import ReserveArithmeticError, SnapshotError, StructuralInvariantViolation
from reserve_audit.ledger import fetch_balances, fetch_pool_snapshot
from reserve_audit.report import pool_frame, write_report
from reserve_audit.reserves import CalculationMode, ReserveCalculator
from reserve_audit.snapshot import AuditSnapshot, dump_snapshot, load_snapshot
from reserve_audit.verify import verify_reserves

logger = logging.getLogger("reserve_audit")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="reserve-audit",
        description="Check that an AMM custodies at least the reserves its pools imply",
    )
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help=f"Logging level (default: {config.LOG_LEVEL})")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Audit the pools in a snapshot file against custodied balances")
    validate.add_argument("snapshot", help="Snapshot JSON with pools, ticks and optionally balances")
    validate.add_argument("--rpc", default=None, help="RPC endpoint for balance lookups (default: use snapshot balances)")
    validate.add_argument("--custody", default=None, help="Custody contract address (default: snapshot 'custody')")
    validate.add_argument("--block", default=None, help="Block for balance lookups (default: snapshot block or latest)")
    validate.add_argument("--mode", choices=[m.value for m in CalculationMode], default=config.MODE,
                          help=f"Reserve calculation mode (default: {config.MODE})")
    validate.add_argument("--tolerance", type=int, default=config.TOLERANCE,
                          help="Per-leg difference tolerated in cross-check mode (default: %(default)s)")
    validate.add_argument("--workers", type=int, default=config.WORKERS,
                          help="Threads auditing pools in parallel (default: %(default)s)")
    validate.add_argument("--concurrency", type=int, default=config.CONCURRENCY,
                          help="Concurrent balance requests (default: %(default)s)")
    validate.add_argument("--report", default=None, help="Write the reconciliation table to this CSV path")

    snapshot = sub.add_parser("snapshot", help="Fetch a Uniswap v4 pool from chain into a snapshot file")
    snapshot.add_argument("--rpc", default=config.RPC, help=f"RPC endpoint (default: {config.RPC})")
    snapshot.add_argument("--pool-manager", required=True, help="PoolManager address")
    snapshot.add_argument("--pool-id", required=True, help="Pool id (bytes32 hex)")
    snapshot.add_argument("--currency0", required=True, help="Currency0 address")
    snapshot.add_argument("--currency1", required=True, help="Currency1 address")
    snapshot.add_argument("--tick-spacing", type=int, required=True, help="Pool tick spacing")
    snapshot.add_argument("--block", default=config.BLOCK, help="Block to read at (default: %(default)s)")
    snapshot.add_argument("--custody", default=None, help="Custody address recorded in the snapshot (default: PoolManager)")
    snapshot.add_argument("--fee-protocol0", type=int, default=0, help="Protocol fees owed in currency0")
    snapshot.add_argument("--fee-protocol1", type=int, default=0, help="Protocol fees owed in currency1")
    snapshot.add_argument("--concurrency", type=int, default=config.CONCURRENCY,
                          help="Concurrent storage reads (default: %(default)s)")
    snapshot.add_argument("-o", "--output", required=True, help="Snapshot JSON to write")

    return parser.parse_args(argv)


def _config_from_args(args: argparse.Namespace, snapshot: AuditSnapshot) -> config.AuditConfig:
    block = args.block if args.block is not None else snapshot.block
    return config.AuditConfig(
        rpc=args.rpc,
        custody=args.custody or snapshot.custody,
        block=config.parse_block(block),
        mode=args.mode,
        tolerance=args.tolerance,
        workers=args.workers,
        concurrency=args.concurrency,
        report=args.report,
        log_level=args.log_level,
    )


def run_validate(args: argparse.Namespace) -> int:
    try:
        snapshot = load_snapshot(args.snapshot)
    except SnapshotError as e:
        logger.error("%s", e)
        print(f"[!] {e}")
        return config.EXIT_STRUCTURAL

    cfg = _config_from_args(args, snapshot)
    calculator = ReserveCalculator(snapshot.curve, CalculationMode(cfg.mode), tolerance=cfg.tolerance)

    try:
        audit = audit_pools(snapshot.pools, calculator, workers=cfg.workers)
    except StructuralInvariantViolation as e:
        print(f"[!] Structural failure in pool {e.pool}: {e.reason}")
        return config.EXIT_STRUCTURAL
    except (ReserveArithmeticError, TickOutOfBounds) as e:
        logger.error("%s", e)
        print(f"[!] Reserve calculation failed: {e} (try --mode independent)")
        return config.EXIT_STRUCTURAL

    if cfg.rpc:
        if not cfg.custody:
            print("[!] --custody is required when fetching balances over RPC")
            return config.EXIT_STRUCTURAL
        w3 = AsyncWeb3(AsyncHTTPProvider(cfg.rpc))
        balances = asyncio.run(
            fetch_balances(w3, cfg.custody, list(audit.requirement), block=cfg.block, concurrency=cfg.concurrency)
        )
    else:
        balances = snapshot.balances or {}

    verification = verify_reserves(audit.requirement, balances)

    if cfg.report:
        write_report(audit, verification, cfg.report)
        print(f"Saved reconciliation report to {cfg.report}")

    print(pool_frame(audit).to_string(index=False))
    print(
        f"Checked {len(verification.checks)} tokens, {len(verification.misses)} lookups missed, "
        f"{len(audit.fallbacks)} legs defaulted to 0, {len(audit.discrepancies)} curve discrepancies"
    )
    if not verification.ok:
        for check in verification.shortfalls:
            print(f"[!] Shortfall {check.token}: required {check.required}, held {check.actual} ({check.diff})")
        return config.EXIT_SHORTFALL

    print("[✓] All reserves covered")
    return config.EXIT_OK


def run_snapshot(args: argparse.Namespace) -> int:
    w3 = AsyncWeb3(AsyncHTTPProvider(args.rpc))
    block = config.parse_block(args.block)
    try:
        pool = asyncio.run(fetch_pool_snapshot(
            w3,
            pool_manager=args.pool_manager,
            pool_id=args.pool_id,
            currency0=args.currency0,
            currency1=args.currency1,
            tick_spacing=args.tick_spacing,
            block=block,
            fee_protocol_x=args.fee_protocol0,
            fee_protocol_y=args.fee_protocol1,
            concurrency=args.concurrency,
        ))
    except ValueError as e:
        print(f"[!] {e}")
        return config.EXIT_STRUCTURAL

    snapshot = AuditSnapshot(
        curve=UNISWAP_V4_CURVE,
        pools=[pool],
        custody=args.custody or args.pool_manager,
        block=block if isinstance(block, int) else None,
    )
    dump_snapshot(snapshot, args.output)
    print(f"Wrote {args.output} ({len(pool.ticks)} ticks)")
    return config.EXIT_OK


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "validate":
        return run_validate(args)
    return run_snapshot(args)


if __name__ == "__main__":
    sys.exit(main())
