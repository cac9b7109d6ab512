"""drawguard — application entry point.

Boots the FastAPI internal server and provides the CLI for running the
monitoring workers, creating plans and connecting accounts.
"""

import logging

from fastapi import FastAPI

from drawguard.api.routers import router

app = FastAPI(title="drawguard Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("drawguard")


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok"}


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the requested command."""
    import argparse
    import asyncio
    import signal

    from drawguard.broker.mtapi_client import MtApiClient
    from drawguard.config import load_config
    from drawguard.repos.db import init_db

    parser = argparse.ArgumentParser(description="drawguard drawdown monitor")
    sub = parser.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Run the monitoring workers (default)")
    run_p.add_argument(
        "--workers-only",
        action="store_true",
        help="Run the workers without the internal API server",
    )

    plan_p = sub.add_parser("add-plan", help="Create a drawdown plan")
    plan_p.add_argument("name")
    plan_p.add_argument("--daily", type=float, required=True, help="Daily limit, percent")
    plan_p.add_argument("--max", type=float, required=True, help="Max limit, percent")
    plan_p.add_argument("--daily-floating", action="store_true")
    plan_p.add_argument("--max-floating", action="store_true")

    acct_p = sub.add_parser("connect-account", help="Connect and register an account")
    acct_p.add_argument("login")
    acct_p.add_argument("server")
    acct_p.add_argument("password", help="Investor (read-only) password")
    acct_p.add_argument("--plan", type=int, required=True, help="Plan id")

    args = parser.parse_args(argv)

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_db(config.db_path)

    if args.command == "add-plan":
        from drawguard.repos.plan_repo import PlanRepo

        plan_id = PlanRepo(config.db_path).create_plan(
            args.name,
            args.daily,
            args.max,
            daily_limit_is_floating=args.daily_floating,
            max_limit_is_floating=args.max_floating,
        )
        logger.info("Created plan '%s' with id %d", args.name, plan_id)
        return

    broker = MtApiClient(config)

    if args.command == "connect-account":
        from drawguard.services.onboarding import connect_account

        account = asyncio.run(
            connect_account(
                config, broker, args.login, args.server, args.password, args.plan
            )
        )
        logger.info("Account %s@%s registered with id %d", account.login, account.server, account.id)
        return

    from drawguard.api.routers import configure_routers
    from drawguard.services.queries import AccountQueries
    from drawguard.worker_manager import WorkerManager

    manager = WorkerManager(config, broker)
    configure_routers(queries=AccountQueries(config.db_path), worker_manager=manager)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        manager.stop_all()

    signal.signal(signal.SIGINT, handle_shutdown)

    if getattr(args, "workers_only", False):
        asyncio.run(_run_workers_only(manager))
    else:
        asyncio.run(_run_worker_manager(manager, config.health_port))


async def _run_worker_manager(manager, port: int = 8080) -> None:
    """Start the API server and all workers concurrently."""
    import asyncio

    import uvicorn

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    async def _run_workers():
        try:
            await manager.run_all()
        finally:
            server.should_exit = True

    logger.info("Internal API available at http://localhost:%d", port)
    results = await asyncio.gather(
        server.serve(),
        _run_workers(),
        return_exceptions=True,
    )
    logger.info("drawguard stopped. Results: %s", results)


async def _run_workers_only(manager) -> None:
    """Run the workers without starting the API server."""
    logger.info("Starting drawguard workers (no API).")
    await manager.run_all()
    logger.info("drawguard workers stopped.")


if __name__ == "__main__":
    _run_cli()
