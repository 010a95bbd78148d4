"""
Configuration settings for the Chessmaster server, powered by Pydantic.

This module centralizes all tunable parameters, default values, and configuration
schemas. Using Pydantic allows for type-safe, self-documenting configuration
that can be loaded from environment variables, providing a clear separation of
configuration from code.
"""
from typing import List

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Nested Models for Configuration Schemas ---

class SeverityThresholdsModel(BaseModel):
    """
    Centipawn deltas at which a played move is flagged.

    The highest tier whose threshold is met wins; below `inaccuracy` a move
    is not flagged at all.
    """
    inaccuracy: int = Field(50, description="Minimum delta for an 'inaccuracy' flag.")
    mistake: int = Field(100, description="Minimum delta for a 'mistake' flag.")
    blunder: int = Field(250, description="Minimum delta for a 'blunder' flag.")

    @model_validator(mode='after')
    def validate_thresholds_are_sorted(self) -> 'SeverityThresholdsModel':
        """Ensures that the thresholds are strictly ascending."""
        if not (self.inaccuracy < self.mistake < self.blunder):
            raise ValueError("Configuration error: severity thresholds must be ascending.")
        return self

class EngineSettings(BaseModel):
    """Configuration for spawning and driving the external search engine."""
    path: str = Field("", description="Path to the engine executable. Empty means resolve from candidates.")
    candidates: List[str] = Field(
        default_factory=lambda: ["bin/stockfish/stockfish", "bin/stockfish/stockfish.exe"],
        description="Fallback executable locations, tried in order.",
    )
    default_movetime_ms: int = Field(1000, description="Search time used when neither depth nor movetime is given.")
    default_timeout_ms: int = Field(6000, description="Deadline for a whole search call when the caller gives none.")
    default_skill_level: int = Field(10, ge=0, le=20, description="UCI 'Skill Level' used when none is requested.")
    max_multipv: int = Field(10, ge=1, description="Upper bound for the number of parallel candidate lines.")
    max_concurrent_searches: int = Field(4, ge=1, description="Maximum number of engine subprocesses alive at once.")

class AnalysisSettings(BaseModel):
    """Groups all settings related to full-game analysis."""
    default_multipv: int = Field(3, ge=1, le=5, description="Candidate lines requested for pre-move searches.")
    max_multipv: int = Field(5, ge=1, description="Upper bound for pre-move candidate lines.")
    thresholds: SeverityThresholdsModel = Field(default_factory=SeverityThresholdsModel)

class LobbySettings(BaseModel):
    """Timings and sizes for the online lobby registry."""
    game_id_length: int = Field(8, ge=4, le=32, description="Length of the shareable lobby identifier.")
    disconnect_grace_s: float = Field(60.0, description="Seconds a disconnected player may take to reattach.")
    ping_interval_s: float = Field(30.0, description="Interval of the liveness sweep.")
    pong_grace_s: float = Field(10.0, description="Time a client has to answer a ping before it is closed.")
    idle_retention_s: float = Field(3600.0, description="How long a detached, lobby-less participant record is kept.")
    cleanup_interval_s: float = Field(300.0, description="Interval of the idle participant sweep.")

class ServerSettings(BaseModel):
    """Network binding for the WebSocket server."""
    host: str = "0.0.0.0"
    port: int = 4000
    ws_path: str = "/ws"

class PersistenceSettings(BaseModel):
    """Configuration for the completed-game record store."""
    db_filepath: str = Field("data/chessmaster.db", description="The file path for the SQLite database.")
    queue_size: int = Field(256, ge=1, description="Capacity of the in-memory persistence queue.")

class DownloadSettings(BaseModel):
    """Where and how the engine binary is fetched by `install-engine`."""
    install_dir: str = "bin/stockfish"
    attempts: int = Field(3, ge=1, description="Download attempts per release URL.")
    timeout_s: float = Field(60.0, description="Per-request network timeout.")

# --- Main Application Settings Class ---

class Settings(BaseSettings):
    """
    Main configuration class for the server.

    It loads settings from environment variables with the prefix 'CHESSMASTER_'.
    Nested models can be configured using a double underscore delimiter, e.g.,
    `CHESSMASTER_ENGINE__PATH=/usr/games/stockfish`.
    """
    model_config = SettingsConfigDict(env_prefix='CHESSMASTER_', env_nested_delimiter='__')

    engine: EngineSettings = Field(default_factory=EngineSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    lobby: LobbySettings = Field(default_factory=LobbySettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    download: DownloadSettings = Field(default_factory=DownloadSettings)
    default_log_level: str = "INFO"
    json_logs: bool = False

# A singleton instance of the settings, accessible throughout the application.
settings = Settings()
