from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Persistence
    storage_backend: str = "memory"  # memory | file
    storage_dir: str = ".cache/researchlens"

    # Term cache
    term_cache_max_entries: int = 20
    term_cache_ttl_hours: int = 24

    # Per-entity research cache
    entity_research_ttl_hours: int = 24

    # Conversation memory
    max_conversations: int = 50
    max_messages_per_conversation: int = 100
    max_global_messages: int = 500
    context_recent_messages: int = 10
    context_global_messages: int = 10
    context_entity_char_cap: int = 4000

    # Fetch orchestration
    fetch_max_parallel: int = 4
    fetch_timeout_seconds: float = 15.0
    fetch_retry_max: int = 3
    fetch_backoff_base_seconds: float = 0.25
    fetch_backoff_max_seconds: float = 2.0
    excerpt_max_chars: int = 4000

    # PubMed E-utilities
    pubmed_base_url: str = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
    pubmed_max_results: int = 5
    pubmed_abstract_max_chars: int = 800

    # Web page fetching
    web_batch_endpoint: str = ""  # e.g. http://localhost:3002/v1/batch/scrape
    web_fetch_api_key: str = ""

    # Text model (OpenRouter, OpenAI-compatible)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    text_model: str = "anthropic/claude-sonnet-4.5"

    # App
    prefetch_topics: str = "diabetes blood glucose management,cholesterol cardiovascular disease"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def prefetch_topic_list(self) -> list[str]:
        return [t.strip() for t in self.prefetch_topics.split(",") if t.strip()]


settings = Settings()
