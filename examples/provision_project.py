"""
Provision, inspect and tear down the sandbox of a stored project.

Projects are read from Hasura (HASURA_BASE_URL / HASURA_GRAPHQL_ADMIN_SECRET);
the provider credentials come from the usual Modal / Daytona environment.

Usage:
    # Attach to the project's sandbox, creating one if needed
    python provision_project.py --project p1 --template vite

    # Report missing critical files
    python provision_project.py --project p1 --health

    # Rebuild a broken sandbox from the latest snapshot or fragment
    python provision_project.py --project p1 --recover

    # Build and publish through the deployment plane
    python provision_project.py --project p1 --deploy --name my-app

    # Delete the sandbox when done
    python provision_project.py --project p1 --terminate
"""

import argparse
import asyncio
import logging
import sys

from src.db.hasura_client import HasuraError, db_enabled_from_env, hasura_client_from_env
from src.deploy.client import DeploymentPlaneClient
from src.deploy.config import DeploymentConfigError, deployment_config_from_env
from src.deploy.pipeline import DeploymentPipeline
from src.lifecycle.manager import SandboxLifecycleManager
from src.projects.hasura_store import HasuraProjectStore
from src.sandbox_backends.errors import SandboxError


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Manage the sandbox of one project")
    parser.add_argument("--project", "-p", type=str, required=True, help="Project id")
    parser.add_argument("--template", type=str, default=None, help="Template for new sandboxes")
    parser.add_argument("--fragment", type=str, default=None, help="Fragment to restore")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--health", action="store_true", help="Print health and exit")
    action.add_argument("--recover", action="store_true", help="Recover a broken sandbox")
    action.add_argument("--snapshot", action="store_true", help="Snapshot the active fragment")
    action.add_argument("--deploy", action="store_true", help="Build and deploy the project")
    action.add_argument("--terminate", action="store_true", help="Terminate the sandbox")
    parser.add_argument("--name", type=str, default=None, help="Deployment app name")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args()


async def run(args, manager: SandboxLifecycleManager) -> int:
    pid = args.project

    if args.health:
        report = await manager.health(pid)
        state = "broken" if report.broken else "healthy"
        print(f"{pid}: {state} (sandbox {report.sandbox_id or '-'})")
        if report.reason:
            print(f"  {report.reason}")
        return 1 if report.broken else 0

    if args.recover:
        outcome = await manager.recover_project(
            pid, fragment_id=args.fragment, template_name=args.template
        )
        verb = "Recovered" if outcome.recovered else "Nothing to recover"
        print(f"{verb}: {outcome.handle.sandbox_id if outcome.handle else '-'}")
        return 0

    if args.snapshot:
        image_id = await manager.snapshot(pid, args.fragment)
        print(f"Snapshot: {image_id}")
        return 0

    if args.terminate:
        if await manager.terminate_sandbox(pid):
            print(f"Terminated sandbox for project '{pid}'")
        else:
            print(f"No sandbox recorded for project '{pid}'")
        return 0

    handle = await manager.get_or_create_sandbox(
        pid, template_name=args.template, fragment_id=args.fragment
    )
    print(f"Sandbox: {handle.sandbox_id} ({handle.provider})")
    print(f"Preview: {handle.public_url or '(no tunnel yet)'}")

    if args.deploy:
        cfg = deployment_config_from_env()
        adapter = manager.adapter(handle.provider)
        pipeline = DeploymentPipeline(adapter, DeploymentPlaneClient(cfg), cfg)
        result = await pipeline.deploy(handle, pid, name=args.name)
        for line in result.logs:
            print(f"  {line}")
        if not result.success:
            print(f"Deployment failed: {result.error}")
            return 1
        print(f"Deployed ({result.strategy}): {result.deployment_url}")
    return 0


def main():
    """Main entry point."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not db_enabled_from_env():
        print("Error: set HASURA_BASE_URL and HASURA_GRAPHQL_ADMIN_SECRET")
        sys.exit(1)

    try:
        store = HasuraProjectStore(hasura_client_from_env())
        manager = SandboxLifecycleManager(store)
        sys.exit(asyncio.run(run(args, manager)))
    except (HasuraError, DeploymentConfigError, SandboxError, KeyError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
