import argparse
from pathlib import Path

from sqlalchemy.orm import Session

from payflow.database import SessionLocal
from payflow.logging_config import get_logger
from payflow.reconciliation import generate_reconciliation_csv, reapply_missing_flags
from payflow.workers import process_flag_outbox, run_expiry_sweep


logger = get_logger(__name__)


def reconcile(output_path: str = "reconciliation.csv", fix: bool = True) -> int:
    """
    Sweep, optionally re-apply missing account flags, then write the remaining
    mismatches to CSV. Exit code 1 when anything is still inconsistent.
    """
    db: Session = SessionLocal()
    try:
        run_expiry_sweep(db)
        if fix:
            process_flag_outbox(db)
            fixed = reapply_missing_flags(db)
            logger.info("Re-applied %s missing account flags", fixed)
        csv_text, mismatches = generate_reconciliation_csv(db)
    finally:
        db.close()
    Path(output_path).write_text(csv_text, newline="")
    return 1 if mismatches else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile confirmed payments against account flags.")
    parser.add_argument("--output", default="reconciliation.csv")
    parser.add_argument("--report-only", action="store_true", help="do not re-apply missing flags")
    args = parser.parse_args(argv)
    return reconcile(args.output, fix=not args.report_only)


if __name__ == "__main__":
    raise SystemExit(main())
