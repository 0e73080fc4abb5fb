"""Pipeline configuration via Pydantic settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Inference service ("http" or "openai")
    inference_provider: str = "http"
    inference_url: str = "http://localhost:8080/api"
    inference_timeout: float = 60.0

    # OpenAI-compatible binding
    openai_api_key: str = ""
    openai_base_url: str | None = None
    embedding_model: str = "text-embedding-3-small"
    llm_model: str = "gpt-4o-mini"
    embedding_dimensions: int = 384

    # Solr
    solr_url: str = "http://localhost:8983/solr"
    solr_core: str = "documents"
    solr_timeout: float = 30.0

    # CouchDB
    couchdb_url: str = "http://localhost:5984"
    couchdb_database: str = "conversations"
    couchdb_user: str = "admin"
    couchdb_password: str = "password"
    couchdb_timeout: float = 30.0

    # Chunking
    chunk_min_length: int = 50
    chunk_fallback_min_length: int = 10

    # Retrieval / answering
    top_k: int = 5
    history_turns: int = 0
    generation_timeout: float = 120.0

    # Ingestion
    ingest_workers: int = 4
    embed_workers: int = 4
    documents_path: str = "./documents"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
