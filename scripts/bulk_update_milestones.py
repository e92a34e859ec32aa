#!/usr/bin/env python3
"""Mark milestones complete for many components from the command line.

Quick mode (one milestone for every selected component):
    python scripts/bulk_update_milestones.py 1 --milestone Receive --drawing-id 4

Advanced mode (per template selections):
    python scripts/bulk_update_milestones.py 1 --select 2=Erect,Connect --select 3=Weld

By default the local database is used; pass --api-url to go through the REST
API instead. Failures can be retried once with --retry.
"""

import argparse
import sys

sys.path.insert(0, ".")

from pipetrak import create_app
from pipetrak.core.exceptions import BulkUpdateValidationError, TransportError
from pipetrak.integrations.local_gateway import LocalMilestoneGateway
from pipetrak.integrations.pipetrak_gateway import PipeTrakGateway
from pipetrak.services.bulk_update_service import generate_update_summary
from pipetrak.services.failure_review import group_failures_by_error_type
from pipetrak.services.milestone_workspace import MilestoneWorkspace


def _parse_selections(values):
    selections = {}
    for raw in values or []:
        key, _, names = raw.partition("=")
        if not key or not names:
            raise SystemExit(f"--select expects TEMPLATE_ID=Name1,Name2 (got {raw!r})")
        selections[key.strip()] = [n.strip() for n in names.split(",") if n.strip()]
    return selections


def _print_progress(progress):
    print(f"[PROGRESS] {progress.percentage:>3}% {progress.message}")


def run(args) -> int:
    if args.api_url:
        gateway = PipeTrakGateway(args.api_url, timeout=args.timeout, max_retries=args.max_retries)
    else:
        gateway = LocalMilestoneGateway(actor=args.actor)

    workspace = MilestoneWorkspace(
        args.project_id, gateway, batch_size=args.batch_size,
    )
    components = workspace.load(drawing_id=args.drawing_id, template_id=args.template_id)
    ids = [c.id for c in components]
    if args.component_ids:
        wanted = {s.strip() for s in args.component_ids.split(",") if s.strip()}
        ids = [cid for cid in ids if str(cid) in wanted]
    print(f"[INFO] project={args.project_id} components={len(ids)}")

    try:
        if args.milestone:
            common = workspace.common_milestones(ids)
            print(f"[INFO] milestones common to every template: {', '.join(common) or '-'}")
            outcome = workspace.quick_update(args.milestone, ids, on_progress=_print_progress)
        else:
            selections = _parse_selections(args.select)
            for line in generate_update_summary(workspace.groups(ids), selections):
                print(f"[PLAN] {line}")
            outcome = workspace.advanced_update(selections, ids, on_progress=_print_progress)
    except BulkUpdateValidationError as exc:
        print(f"[ERROR] {exc}")
        for warning in exc.warnings:
            print(f"[WARN] {warning}")
        return 2
    except TransportError as exc:
        print(f"[ERROR] {exc}")
        return 3

    print(f"[{outcome.summary.level.upper()}] {outcome.summary.message}")
    if outcome.review is None:
        return 0

    for err_type, failures in outcome.review.grouped().items():
        print(f"[FAIL] {err_type} ({len(failures)})")
    print(outcome.review.as_text())

    if args.retry:
        outcome.review.select_all()
        outcome.review.retry()
        print(f"[RETRY] {outcome.review.last_message}")
        remaining = outcome.review.visible_failures
        if remaining:
            print(outcome.review.as_text())
        return 1 if remaining else 0
    return 1


def main():
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("project_id", type=int)
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--milestone", help="quick mode: milestone name to complete")
    mode.add_argument("--select", action="append", help="advanced mode: TEMPLATE_ID=Name1,Name2")
    parser.add_argument("--drawing-id", type=int)
    parser.add_argument("--template-id", type=int)
    parser.add_argument("--component-ids", help="comma separated component ids")
    parser.add_argument("--api-url", help="use the REST API at this base URL")
    parser.add_argument("--timeout", type=int, default=30)
    parser.add_argument("--max-retries", type=int, default=2)
    parser.add_argument("--batch-size", type=int, default=50)
    parser.add_argument("--actor", default="cli")
    parser.add_argument("--retry", action="store_true", help="retry failures once")
    args = parser.parse_args()

    if args.api_url:
        sys.exit(run(args))
    app = create_app()
    with app.app_context():
        sys.exit(run(args))


if __name__ == "__main__":
    main()
