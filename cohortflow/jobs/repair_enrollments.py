"""
Demote duplicate ENROLLED memberships, keeping the most recently joined one.

    python -m cohortflow.jobs.repair_enrollments [--learner ID] [--dry-run]
"""
import argparse
import logging
from cohortflow.core.config import settings
from cohortflow.core.database import SessionLocal
from cohortflow.services.isolation import repair_duplicate_enrollments

logger = logging.getLogger(__name__)

def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    ap.add_argument("--learner", help="only repair this learner id")
    ap.add_argument("--dry-run", action="store_true", help="report what would change without writing")
    ap.add_argument("--demote-to", default=settings.ENROLLMENT_REPAIR_DEMOTE_TO,
                    choices=["GRADUATED", "REMOVED", "SUSPENDED"])
    args = ap.parse_args(argv)

    db = SessionLocal()
    try:
        actions = repair_duplicate_enrollments(db, learner_id=args.learner, demote_to=args.demote_to,
                                               dry_run=args.dry_run)
    finally:
        db.close()
    for a in actions:
        print(f"{'would keep' if args.dry_run else 'kept'} membership {a.kept_membership_id} "
              f"(cohort {a.kept_cohort_id}) for {a.learner_id}; demoted {a.demoted_membership_ids}")
    logger.info("%d learner(s) with duplicate enrollments%s", len(actions), " (dry run)" if args.dry_run else "")
    return 0

if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    raise SystemExit(main())
