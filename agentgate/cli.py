from __future__ import annotations
import argparse
from . import __version__
from .approvals import (
    ApprovalQueryOptions,
    ApprovalService,
    ApprovalStore,
    ExpirationJob,
    ExpirationOptions,
    ExpirationSweeper,
)
from .audit.chainlog import ChainAuditLog
from .config import PROFILES, Settings, load_settings
from .core.types import to_iso
from .tools.logs import log_event, setup_logging

# === Display ==================================================================
def _print_banner(s: Settings) -> None:
    print(f"agentgate v{__version__} ({s.general.profile})")

def _print_settings(s: Settings) -> None:
    a = s.approvals
    print(f"db      = {s.store.db_path}")
    print(f"audit   = {s.audit.chain_path}")
    print(f"expiry  = {{low={a.low_hours}h, medium={a.medium_hours}h, high={a.high_hours}h, critical={a.critical_hours}h}}")
    print(f"sweeper = {{interval={s.sweeper.interval_seconds}s, batch={s.sweeper.batch_size}, cancel_plans={s.sweeper.cancel_affected_plans}}}")

def _print_result(result) -> None:
    print(f"expired = {result.expired_count}")
    print(f"plans   = {','.join(result.affected_plan_ids) if result.affected_plan_ids else '-'}")

# === Arguments ================================================================
def _argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser("agentgate", description="agentgate: approval gate for agent plans")
    ap.add_argument("--version", action="store_true", help="Print the version and exit.")
    ap.add_argument("--config", default="config", help="Configuration directory.")
    ap.add_argument("--profile", choices=PROFILES, default="standard", help="Configuration profile.")
    ap.add_argument("--db", default=None, help="SQLite path (default: store.db_path).")
    # Expiration
    ap.add_argument("--sweep", action="store_true", help="Expire stale approvals once.")
    ap.add_argument("--batched", action="store_true", help="With --sweep: run in capped batches.")
    ap.add_argument("--watch", action="store_true", help="Run the expiration job until interrupted.")
    ap.add_argument("--interval", type=float, default=None, help="Seconds between sweeps (default: sweeper.interval_seconds).")
    ap.add_argument("--max-runs", type=int, default=None, help="With --watch: stop after N sweeps.")
    # Queries
    ap.add_argument("--pending", metavar="USER", help="List a user's actionable approvals.")
    ap.add_argument("--approaching", metavar="USER", help="List a user's approvals about to expire.")
    ap.add_argument("--warning-minutes", type=int, default=None, help="Window for --approaching (default: approvals.warning_minutes).")
    ap.add_argument("--counts", metavar="USER", help="Approval counts per status for a user.")
    return ap

def build_parser() -> argparse.ArgumentParser:
    return _argparser()

# === Main ====================================================================
def main(argv: list[str] | None = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    if args.version:
        print(__version__)
        return 0

    s = load_settings(config=args.config, profile=args.profile, overrides={"db_path": args.db})
    setup_logging(s)

    _print_banner(s)
    _print_settings(s)

    store = ApprovalStore(s.store.db_path)
    audit = ChainAuditLog(s.audit.chain_path, secret=s.audit.chain_secret)
    sweeper = ExpirationSweeper(
        store,
        audit,
        options=ExpirationOptions(
            cancel_affected_plans=s.sweeper.cancel_affected_plans, batch_size=s.sweeper.batch_size
        ),
    )
    try:
        if args.sweep:
            print("\n=== SWEEP ===")
            if args.batched:
                result = sweeper.process_expirations_in_batches(delay=s.sweeper.batch_delay_seconds)
            else:
                result = sweeper.run_expiration_check()
            _print_result(result)
            log_event(s, f"sweep expired={result.expired_count} plans={len(result.affected_plan_ids)}")

        if args.watch:
            interval = args.interval if args.interval is not None else s.sweeper.interval_seconds
            job = ExpirationJob(sweeper, interval_seconds=interval, max_runs=args.max_runs)
            print(f"\n=== WATCH (every {interval}s) ===")
            job.start()
            try:
                while job.is_running:
                    job.join(timeout=0.5)
            except KeyboardInterrupt:
                print("interrupted")
            finally:
                job.stop()
            print(f"runs = {job.runs}")
            log_event(s, f"watch runs={job.runs}")

        if args.pending:
            service = ApprovalService(store, audit, expirations=s.expiration_table())
            items = service.get_pending_approvals(args.pending, ApprovalQueryOptions(limit=100))
            print("\n=== PENDING ===")
            for a in items:
                print(f"{a.id} | {a.tool_name} | {a.risk_level} | expires {to_iso(a.expires_at)}")
            print(f"pending = {len(items)}")

        if args.approaching:
            minutes = args.warning_minutes if args.warning_minutes is not None else s.approvals.warning_minutes
            ids = sweeper.get_approaching_expirations(args.approaching, warning_minutes=minutes)
            print(f"\n=== APPROACHING ({minutes} min) ===")
            for approval_id in ids:
                print(approval_id)
            print(f"approaching = {len(ids)}")

        if args.counts:
            counts = store.get_count_by_status(args.counts)
            print("\n=== COUNTS ===")
            for status in sorted(counts):
                print(f"{status} = {counts[status]}")
            print(f"total = {sum(counts.values())}")
    finally:
        store.close()

    print("\nSTATUS: ok")
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
