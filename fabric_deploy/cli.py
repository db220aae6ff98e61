import argparse
import os
import signal
import sys
import threading
from typing import List, Optional

from fabric_deploy.config import ENVIRONMENTS, DeploySettings
from fabric_deploy.deployer import deploy_plan
from fabric_deploy.errors import ConfigError, ContainerError, FabricAuthError, PlanError
from fabric_deploy.plan import DeploymentPlan, load_plan
from fabric_deploy.report import ExitCode, exit_code_for, format_report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fabric-deploy",
        description="Deploy semantic models, reports and other items to a Fabric workspace using Fabric REST APIs.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Deploy every artifact of a plan, in dependency order")
    deploy.add_argument("--env", choices=sorted(ENVIRONMENTS), default="dev")
    deploy.add_argument(
        "--workspace", "--container",
        dest="workspace",
        default=None,
        help="Target workspace name (default: FABRIC_WORKSPACE, the plan's workspace, or the --env default)",
    )
    deploy.add_argument("--spec", dest="plan", default=None, help="Plan file (JSON or YAML)")
    deploy.add_argument("--root", default=".", help="Repository root for the built-in model + report plan")
    deploy.add_argument("--capacity", default=None, help="Capacity id to assign a newly created workspace to")
    deploy.add_argument("--admin-upns", default=None, help="Comma separated principal ids granted Admin on a new workspace")
    deploy.add_argument("--continue-on-error", action="store_true", help="Keep deploying artifacts that do not depend on a failed one")
    deploy.add_argument("--max-workers", type=int, default=1, help="Deploy up to N independent artifacts at once")
    deploy.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds")
    deploy.add_argument("--quiet", action="store_true", help="Do not print every API call")

    validate = sub.add_parser("validate", help="Check a plan file without contacting Fabric")
    validate.add_argument("--spec", dest="plan", required=True, help="Plan file (JSON or YAML)")

    return parser


def _load(args: argparse.Namespace) -> DeploymentPlan:
    if args.plan:
        return load_plan(args.plan)
    return DeploymentPlan.default(getattr(args, "root", "."))


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        plan = _load(args)
        plan.ensure_valid()
    except PlanError as e:
        print(f"❌ {e.describe()}")
        return ExitCode.PLAN_INVALID

    print("✅ Plan is valid. Deployment order:")
    for i, spec in enumerate(plan.artifacts, 1):
        deps = f" (after {', '.join(spec.dependencies)})" if spec.dependencies else ""
        print(f"  {i}. {spec.name} [{spec.kind}] {spec.path}{deps}")
    return ExitCode.OK


def cmd_deploy(args: argparse.Namespace) -> int:
    try:
        plan = _load(args)
        plan.ensure_valid()
    except PlanError as e:
        print(f"❌ {e.describe()}")
        return ExitCode.PLAN_INVALID

    try:
        settings = DeploySettings.from_env(args.env)
    except ConfigError as e:
        print(f"❌ {e.describe()}")
        return ExitCode.USAGE
    admin_principals = None
    if args.admin_upns is not None:
        admin_principals = tuple(p.strip() for p in args.admin_upns.split(",") if p.strip())
    settings = settings.with_overrides(
        capacity_id=args.capacity,
        admin_principals=admin_principals,
        request_timeout=args.timeout,
    )

    workspace = args.workspace or os.getenv("FABRIC_WORKSPACE") or plan.workspace or settings.workspace

    print(f"=== 🚀 DEPLOY TO {args.env.upper()} ({workspace}) ===")

    cancel = threading.Event()

    def on_sigint(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        print("\n⚠️ Cancel requested: no new uploads will start, waiting for the current one to finish...")
        cancel.set()

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        report = deploy_plan(
            settings,
            plan,
            workspace,
            halt_on_failure=not args.continue_on_error,
            max_workers=args.max_workers,
            cancel=cancel,
            quiet=args.quiet,
        )
    except FabricAuthError as e:
        print(f"❌ {e.describe()}")
        return ExitCode.AUTH_FAILED
    except ContainerError as e:
        print(f"❌ {e.describe()}")
        return ExitCode.CONTAINER_FAILED
    finally:
        signal.signal(signal.SIGINT, previous)

    print()
    for line in format_report(report):
        print(line)
    return exit_code_for(report)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "validate":
        return int(cmd_validate(args))
    return int(cmd_deploy(args))


if __name__ == "__main__":
    sys.exit(main())
