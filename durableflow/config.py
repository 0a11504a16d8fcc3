"""
Configuration settings for DurableFlow.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""
    
    # Application
    APP_NAME: str = "DurableFlow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True
    
    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    
    # Execution Engine
    MAX_LOOP_ITERATIONS: int = 1000  # Per while-node, per run
    MAX_STEPS: int = 10000  # Per run
    
    # Persistence
    CHECKPOINT_BACKEND: str = "memory"  # "memory" or "file"
    CHECKPOINT_DIR: str = ".durableflow/checkpoints"
    STATE_DIR: str = ".durableflow"  # Graphs, webhooks, schedules, suspensions (file backend)
    SUSPENSION_FILE: Optional[str] = None  # Overrides {STATE_DIR}/suspensions.json
    RECOVER_ON_STARTUP: bool = True  # Continue runs left mid-step by a crash
    RECOVERY_GRACE_SECONDS: float = 300.0  # Younger checkpoints may belong to a live process
    
    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TICK_SECONDS: float = 60.0
    
    # Capabilities
    HTTP_TIMEOUT_SECONDS: float = 30.0
    MCP_TIMEOUT_SECONDS: float = 30.0
    
    # Logging
    LOG_LEVEL: str = "INFO"
    
    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
