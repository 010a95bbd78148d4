# chessmaster/containers.py
"""
Defines the Dependency Injection (DI) container for the server.

This module uses the `punq` library to wire the rules engine, the engine
adapter, the analysis pipeline, the lobby registry with its gateway and the
completed-game persistence path. Long-lived services are registered as
singletons so the gateway, registry and persistence client share state.
"""

import asyncio

import punq

from chessmaster.config.settings import Settings
from chessmaster.core.rules import RulesEngine
from chessmaster.gateway.connection_gateway import ConnectionGateway
from chessmaster.lobby.registry import LobbyRegistry
from chessmaster.lobby.scheduler import AsyncioScheduler
from chessmaster.orchestration.analysis_pipeline import GameAnalysisPipeline
from chessmaster.orchestration.persistence_client import (PersistenceClient,
                                                          PersistenceWriter)
from chessmaster.services.engine_installer import EngineInstaller
from chessmaster.services.engine_session import StockfishService
from chessmaster.services.game_record_store import SqliteGameRecordStore


def get_container(settings: Settings) -> punq.Container:
    """Initializes and returns a DI container configured from `settings`."""
    container = punq.Container()
    singleton = punq.Scope.singleton

    # Register instances that are created outside the container's control.
    container.register(Settings, instance=settings)
    persistence_queue: asyncio.Queue = asyncio.Queue(maxsize=settings.persistence.queue_size)

    # --- Chess and engine services ---
    container.register(RulesEngine, scope=singleton)
    container.register(StockfishService, factory=lambda: StockfishService(settings.engine), scope=singleton)
    container.register(EngineInstaller, factory=lambda: EngineInstaller(settings.download))
    container.register(
        GameAnalysisPipeline,
        factory=lambda: GameAnalysisPipeline(
            container.resolve(StockfishService), container.resolve(RulesEngine), settings.analysis
        ),
    )

    # --- Completed-game persistence ---
    container.register(
        SqliteGameRecordStore, factory=lambda: SqliteGameRecordStore(settings.persistence), scope=singleton
    )
    container.register(PersistenceClient, factory=lambda: PersistenceClient(persistence_queue), scope=singleton)
    container.register(
        PersistenceWriter,
        factory=lambda: PersistenceWriter(persistence_queue, container.resolve(SqliteGameRecordStore)),
        scope=singleton,
    )

    # --- Online play ---
    container.register(AsyncioScheduler, scope=singleton)
    container.register(
        LobbyRegistry,
        factory=lambda: LobbyRegistry(
            container.resolve(RulesEngine),
            settings.lobby,
            container.resolve(AsyncioScheduler),
            completion_sink=container.resolve(PersistenceClient),
        ),
        scope=singleton,
    )
    container.register(
        ConnectionGateway,
        factory=lambda: ConnectionGateway(container.resolve(LobbyRegistry), settings.lobby),
        scope=singleton,
    )

    return container
