"""Application configuration."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    
    # Database
    DATABASE_URL: str = "postgresql+asyncpg://prospects:prospects@db:5432/prospects"
    # Public connection string (managed hosting); required by the processing pipeline
    DATABASE_PUBLIC_URL: Optional[str] = None
    AUTO_CREATE_TABLES: bool = True
    
    # Security
    SECRET_KEY: str = "your-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    
    # AI
    GOOGLE_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-flash"
    
    # Uploads
    UPLOAD_DIR: str = "uploads"
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    MAX_UPLOAD_SIZE_MB: int = 50
    
    # Progress streaming
    SSE_KEEPALIVE_SECONDS: int = 15
    PROGRESS_RETENTION_SECONDS: int = 300
    
    # Scheduler
    ENABLE_SCHEDULER: bool = True
    STALE_PROCESSING_MINUTES: int = 30
    
    CORS_ORIGINS: str = "*"
    
    @property
    def max_upload_bytes(self) -> int:
        return self.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    
    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
