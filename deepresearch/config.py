from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_referer: str = "https://github.com/deepresearch"
    openrouter_title: str = "Deep Research"
    llm_timeout_seconds: float = 120.0
    llm_max_retries: int = 3
    llm_retry_base_delay: float = 0.1
    llm_temperature: float = 0.7
    llm_max_tokens: int = 4096
    report_max_tokens: int = 8192

    # SearXNG (comma separated instance URLs)
    searxng_instances: str = ""
    searxng_priority_order: bool = False
    search_timeout_seconds: float = 10.0
    search_max_retries: int = 3
    search_retry_base_delay: float = 0.5
    search_pacing_seconds: float = 2.0

    # Content extraction
    scrape_provider: str = "jina"  # jina | direct
    jina_reader_base_url: str = "https://r.jina.ai/"
    jina_api_key: str = ""
    scrape_timeout_seconds: float = 30.0
    scrape_max_retries: int = 3
    scrape_retry_base_delay: float = 1.0
    max_concurrent_scrapes: int = 20
    scrape_min_interval_seconds: float = 0.05  # 20 requests/second

    # Cache
    cache_enabled: bool = False
    cache_path: str = ".cache/deepresearch.db"
    cache_ttl_hours: float = 24.0

    # Orchestration
    default_depth: str = "normal"  # shallow | normal | deep
    summary_concurrency: int = 1
    summary_content_chars: int = 8000
    rank_snippet_chars: int = 200
    report_max_sources: int = 10
    report_content_chars: int = 50000
    partial_report_max_sources: int = 5

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    log_to_file: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def searxng_instance_list(self) -> list[str]:
        return [i.strip() for i in self.searxng_instances.split(",") if i.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
