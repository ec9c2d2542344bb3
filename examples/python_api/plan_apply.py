from __future__ import annotations

import argparse
from pathlib import Path

from cloud_provisioner.config import apply, load, plan


def _progress(change: object, event: str) -> None:
    address = getattr(change, "address", "unknown")
    print(f"[apply:{event:6}] {address}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Plan/apply a cloud-provisioner config via Python")
    parser.add_argument("--config", default="cloud-provisioner.yaml", help="Path to config file")
    parser.add_argument("--apply", action="store_true", help="Apply the generated plan")
    parser.add_argument("--no-refresh", action="store_true", help="Skip refresh during plan")
    args = parser.parse_args()

    config = load(Path(args.config))

    plan_obj = plan(config, refresh=not args.no_refresh)
    print("Plan summary:", plan_obj.summary())
    for change in plan_obj.changes:
        suffix = f"  ({change.error})" if change.error else ""
        print(f"- {change.action.value:7} {change.address}{suffix}")

    if args.apply:
        result = apply(plan_obj, config, progress=_progress)
        print("Apply summary:", result.summary())
        for r in result.results:
            if r.status.value not in ("applied", "no-op"):
                print(f"  {r.address}: {r.status.value} {r.error or r.blocked_by or ''}")


if __name__ == "__main__":
    main()
