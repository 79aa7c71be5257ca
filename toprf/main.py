"""Entry point for the threshold OPRF node.

Starts the FastAPI server and the key event watcher concurrently.
"""

from __future__ import annotations

import asyncio
import signal
import sys
import time
from pathlib import Path
from urllib.parse import urlparse

import structlog
import uvicorn

from toprf import __version__
from toprf.logging import configure_logging

configure_logging()

from toprf.api.metrics import UPTIME_SECONDS
from toprf.api.server import create_app
from toprf.chain.contracts import Web3KeyRegistry
from toprf.config import Config
from toprf.core.auth import HmacTokenAuthenticator, OprfRequestAuthenticator, PassThroughAuthenticator
from toprf.core.key_event_watcher import KeyEventWatcher
from toprf.core.oprf_service import OprfNodeService
from toprf.core.secret_gen import SecretGenService
from toprf.core.secret_manager import SecretManager
from toprf.core.secret_manager_aws import AwsSecretManager
from toprf.core.secret_manager_sqlite import SqliteSecretManager

log = structlog.get_logger()


def _sanitize_url(url: str) -> str:
    """Strip credentials and path from URL for safe logging."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        return "<unparseable>"
    return f"{parsed.scheme}://{parsed.hostname}:{parsed.port or 443}"


def build_secret_manager(config: Config) -> SecretManager:
    if config.secret_manager == "aws":
        return AwsSecretManager(
            secret_prefix=config.aws_secret_prefix,
            wallet_secret_id=config.wallet_secret_id,
            region_name=config.aws_region or None,
            max_cache_size=config.max_epoch_cache_size,
        )
    data_dir = Path(config.data_dir).resolve()
    data_dir.mkdir(parents=True, exist_ok=True)
    return SqliteSecretManager(
        db_path=str(data_dir / "secrets.db"),
        max_cache_size=config.max_epoch_cache_size,
    )


def build_authenticators(config: Config) -> dict[str, OprfRequestAuthenticator]:
    authenticator: OprfRequestAuthenticator
    if config.auth_mode == "hmac":
        authenticator = HmacTokenAuthenticator(config.auth_hmac_secret.encode())
    else:
        authenticator = PassThroughAuthenticator()
    return {module: authenticator for module in config.modules}


async def run_server(app: object, host: str, port: int) -> None:
    """Run uvicorn as an async task."""
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
        timeout_graceful_shutdown=10,
        timeout_keep_alive=65,
    )
    server = uvicorn.Server(config)
    await server.serve()


async def async_main() -> None:
    """Start the node with concurrent API server and key event watcher."""
    config = Config()
    warnings = config.validate()
    for w in warnings:
        log.warning("config_warning", msg=w)

    started_at = time.monotonic()
    UPTIME_SECONDS.set_function(lambda: time.monotonic() - started_at)

    secret_manager = build_secret_manager(config)
    account = await secret_manager.load_or_insert_wallet_private_key()
    latest = await secret_manager.load_secrets()

    oprf_service = OprfNodeService(
        party_id=config.party_id,
        secret_manager=secret_manager,
        authenticators=build_authenticators(config),
        session_lifetime=config.session_lifetime,
    )

    registry: Web3KeyRegistry | None = None
    watcher: KeyEventWatcher | None = None
    if config.key_registry_address:
        registry = Web3KeyRegistry(
            rpc_url=config.rpc_urls,
            registry_address=config.key_registry_address,
            account=account,
            chain_id=config.chain_id,
            rpc_timeout=config.rpc_timeout,
            confirmation_timeout=config.tx_confirmation_timeout,
        )
        watcher = KeyEventWatcher(
            registry,
            SecretGenService(config.party_id, round_timeout=config.secret_gen_round_timeout),
            secret_manager,
            start_block=config.start_block,
            poll_interval=config.poll_interval,
        )

    app = create_app(
        oprf_service=oprf_service,
        secret_manager=secret_manager,
        started_services=[watcher] if watcher is not None else [],
        wallet_address=account.address,
        cors_origins=config.cors_origins,
        rate_limit_capacity=config.rate_limit_capacity,
        rate_limit_rate=config.rate_limit_rate,
        client_version_requirement=config.client_version_req,
        max_request_bytes=config.max_request_bytes,
    )

    log.info(
        "node_starting",
        version=__version__,
        party_id=config.party_id,
        host=config.api_host,
        port=config.api_port,
        modules=config.modules,
        secret_manager=config.secret_manager,
        wallet_address=account.address,
        keys_held=len(latest),
        rpc_url=_sanitize_url(config.rpc_urls[0]),
        watcher_enabled=watcher is not None,
    )

    running_tasks = [asyncio.create_task(run_server(app, config.api_host, config.api_port))]
    if watcher is not None:
        running_tasks.append(asyncio.create_task(watcher.run()))

    shutdown_event = asyncio.Event()

    def _shutdown(sig: signal.Signals) -> None:
        log.info("shutdown_signal", signal=sig.name)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)

    # A task that ends on its own (e.g. the server failed to bind) stops the node too
    done_waiter = asyncio.create_task(shutdown_event.wait())
    done, _ = await asyncio.wait([done_waiter, *running_tasks], return_when=asyncio.FIRST_COMPLETED)
    log.info("shutting_down")
    for t in [done_waiter, *running_tasks]:
        t.cancel()
    try:
        await asyncio.wait_for(
            asyncio.gather(*running_tasks, return_exceptions=True),
            timeout=15.0,
        )
    except asyncio.TimeoutError:
        log.warning("shutdown_timeout", msg="Tasks did not finish within 15s")
    if registry is not None:
        try:
            await registry.close()
        except Exception as e:
            log.warning("registry_close_error", error=str(e))
    try:
        await secret_manager.close()
    except Exception as e:
        log.warning("secret_manager_close_error", error=str(e))
    for task in done:
        if task is not done_waiter and not task.cancelled() and task.exception() is not None:
            raise task.exception()  # type: ignore[misc]
    log.info("shutdown_complete")


def main() -> None:
    """Start the OPRF node."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        log.critical("fatal_error", error=str(e), error_type=type(e).__name__, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
