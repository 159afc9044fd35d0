"""wagate — Main entry point."""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

from .config import GatewaySettings, load_settings
from .session.connection import ConnectionManager
from .session.credentials import CredentialStore
from .session.facade import GatewayFacade
from .session.inbound import InboundRouter, log_inbound
from .session.outbound import OutboundGateway
from .session.transport import MessagingTransport

_log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("wagate")


def setup_logging(settings: GatewaySettings):
    """Console + optional file logging."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        log_file = os.path.expanduser(settings.log_file)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format=_log_format,
        handlers=handlers,
    )
    # Uvicorn access logs are noisy at INFO
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@dataclass
class Gateway:
    """Wired components of one running gateway."""
    settings: GatewaySettings
    store: CredentialStore
    transport: MessagingTransport
    manager: ConnectionManager
    inbound: InboundRouter
    outbound: OutboundGateway
    facade: GatewayFacade


def build_gateway(
    settings: GatewaySettings,
    transport: Optional[MessagingTransport] = None,
) -> Gateway:
    """Wire store → transport → manager → router/gateway → facade."""
    if transport is None:
        from .transports.wacli import WacliTransport
        transport = WacliTransport(
            wacli_path=settings.wacli_path,
            store_dir=settings.wacli_store_dir,
            poll_interval=settings.poll_interval,
        )

    store = CredentialStore(settings.auth_dir)
    manager = ConnectionManager(
        transport,
        store,
        reconnect_delay=settings.reconnect_delay,
        connect_retry_delay=settings.connect_retry_delay,
    )

    inbound = InboundRouter()
    inbound.add_handler(log_inbound)
    manager.set_inbound_consumer(inbound.route)

    outbound = OutboundGateway(manager, transport)
    facade = GatewayFacade(manager, outbound, own_number=settings.my_number)
    return Gateway(
        settings=settings,
        store=store,
        transport=transport,
        manager=manager,
        inbound=inbound,
        outbound=outbound,
        facade=facade,
    )


async def run(settings: Optional[GatewaySettings] = None):
    """Main run loop: HTTP server + WhatsApp session until interrupted."""
    import uvicorn
    from .api.app import create_app

    settings = settings or load_settings()
    setup_logging(settings)

    gateway = build_gateway(settings)
    app = create_app(gateway.facade, manager=gateway.manager)

    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
    server = uvicorn.Server(config)

    logger.info(f"wagate listening on {settings.host}:{settings.port}. Press Ctrl+C to stop.")
    try:
        await server.serve()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.critical(f"Fatal error: {type(e).__name__}: {e}", exc_info=True)
        raise
    finally:
        # Lifespan already stopped the manager on a clean exit; make sure
        # pending credential writes land either way.
        await gateway.manager.flush()


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
