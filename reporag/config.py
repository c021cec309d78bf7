"""
Configuration management using Pydantic Settings.
Loads from environment variables and .env file.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM Provider: "ollama" (free, local), "openai" or "anthropic" (paid, cloud)
    llm_provider: str = Field("ollama", description="LLM provider: 'ollama', 'openai' or 'anthropic'")
    embedding_provider: Optional[str] = Field(
        None, description="Embedding provider: 'ollama' or 'openai' (defaults to llm_provider, anthropic falls back to openai)"
    )

    # API Keys (only needed if using cloud providers)
    anthropic_api_key: Optional[str] = Field(None, description="Anthropic API key for Claude")
    openai_api_key: Optional[str] = Field(None, description="OpenAI API key for embeddings and chat")
    github_token: Optional[str] = Field(None, description="GitHub token, enables repository preflight checks")

    # Model Configuration
    llm_model: str = Field("llama3.1", description="Chat model (llama3.1 for Ollama, gpt-3.5-turbo for OpenAI)")
    llm_temperature: float = Field(0.0, description="Sampling temperature for answers")
    embedding_model: str = Field("nomic-embed-text", description="Embedding model (text-embedding-ada-002 for OpenAI)")
    embedding_dimensions: Optional[int] = Field(None, description="Expected embedding width, validated when set")

    # Ollama Configuration
    ollama_base_url: str = Field("http://localhost:11434", description="Ollama server URL")

    # Database (run registry, run ledger, saga step records)
    database_url: str = Field("sqlite:///./reporag.db", description="SQLAlchemy database URL")

    # ChromaDB Configuration
    chroma_persist_directory: str = Field("./chroma_db", description="ChromaDB persistence path")
    chroma_collection_name: str = Field("documents", description="ChromaDB collection name")
    chroma_host: Optional[str] = Field(None, description="ChromaDB server host (uses local persistence when unset)")
    chroma_port: int = Field(8000, description="ChromaDB server port")

    # Scratch storage
    object_store_backend: str = Field("local", description="Scratch storage backend: 'local' or 's3'")
    scratch_directory: str = Field("./scratch", description="Root directory for the local backend and git checkouts")
    s3_endpoint_url: Optional[str] = Field(None, description="S3-compatible endpoint (MinIO, LocalStack)")
    s3_region: str = Field("us-east-1", description="S3 region")
    aws_access_key_id: Optional[str] = Field(None, description="S3 access key id")
    aws_secret_access_key: Optional[str] = Field(None, description="S3 secret access key")

    # Saga timeout tiers (seconds)
    short_timeout: float = Field(60.0, description="Provisioning and cleanup steps")
    medium_timeout: float = Field(300.0, description="Source collection step")
    long_timeout: float = Field(3000.0, description="Embedding and storage step")

    # Saga retry policy
    retry_max_attempts: int = Field(3, description="Attempts per step, including the first")
    retry_initial_interval: float = Field(1.0, description="Seconds before the first retry")
    retry_backoff_factor: float = Field(2.0, description="Multiplier applied to the interval after each retry")
    retry_max_interval: float = Field(60.0, description="Upper bound for the retry interval")
    retry_jitter: bool = Field(True, description="Add random jitter to retry intervals")

    # Ingestion defaults
    default_branch: str = Field("main", description="Branch used when none is given")
    default_file_extensions: List[str] = Field(["md"], description="Extension allow-list used when none is given")

    # RAG Configuration
    chunk_size: int = Field(8000, description="Files longer than this many characters are split")
    chunk_overlap: int = Field(200, description="Overlap between split pieces")
    retrieval_k: int = Field(5, description="Number of content units to retrieve")
    assistant_project_name: str = Field("the indexed repository", description="Project named in the system prompt")

    # Server Configuration
    api_host: str = Field("0.0.0.0", description="API server host")
    api_port: int = Field(8000, description="API server port")
    recover_on_startup: bool = Field(True, description="Resume interrupted ingestion runs when the API starts")

    # Logging
    log_level: str = Field("INFO", description="Minimum log level")
    json_logs: bool = Field(False, description="Emit JSON log lines")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
