import logging

from brokerprobe.config.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST

from brokerprobe.config.config import Config
from brokerprobe.contracts.connection import ConnectionStatus
from brokerprobe.contracts.prober_config import ProberConfig
from brokerprobe.core.amqp_connection import AioPikaConnection, connect
from brokerprobe.core.prober_supervisor import ProberSupervisor
from brokerprobe.errors import UnknownConnection


def create_app(supervisor: ProberSupervisor, lifespan=None) -> FastAPI:
    """
    Build the read-only status API for a supervisor.

    Args:
        supervisor (ProberSupervisor): The supervisor whose connections are reported.
        lifespan: Optional FastAPI lifespan context.

    Returns:
        FastAPI: The application.
    """
    app = FastAPI(title="broker-probe", lifespan=lifespan)

    @app.get("/connections", response_model=List[ConnectionStatus])
    async def list_connections():
        return supervisor.statuses()

    @app.get("/connections/{connection_id}", response_model=ConnectionStatus)
    async def get_connection(connection_id: str):
        try:
            return supervisor.status_of(connection_id)
        except UnknownConnection as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/metrics")
    def metrics():
        return Response(supervisor.metrics.exposition(), media_type=CONTENT_TYPE_LATEST)

    return app


def build_lifespan(supervisor: ProberSupervisor, connections: List[AioPikaConnection]):
    """
    Lifespan that opens ``Config.BROKER_CONNECTIONS`` broker connections and
    registers each with the supervisor. Whatever was opened is unregistered and
    closed on shutdown, and also when a later connection fails to open.
    """

    @asynccontextmanager
    async def lifespan(app):
        try:
            for i in range(Config.BROKER_CONNECTIONS):
                name = f"broker-{i}"
                connection = await connect(
                    Config.BROKER_URL, name=name, timeout=Config.BROKER_CONNECT_TIMEOUT
                )
                connections.append(connection)
                await supervisor.connection_opened(name, connection)
            yield
        finally:
            for connection in connections:
                await supervisor.connection_closing(connection.name)
                try:
                    await connection.close()
                except Exception:
                    logger.exception(f"Failed to close {connection!r}")
            connections.clear()
            await supervisor.shutdown()

    return lifespan


supervisor = ProberSupervisor(ProberConfig.from_env())
connections: List[AioPikaConnection] = []
app = create_app(supervisor, lifespan=build_lifespan(supervisor, connections))

logger.info("Prober status app module loaded and logging is configured.")
