from pydantic_settings import BaseSettings

DEFAULT_FALLBACK_MESSAGE = "ขอโทษค่ะ ระบบขัดข้องชั่วคราว กรุณาโทร 088-277-0145 นะคะ 🙏"


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


class Settings(BaseSettings):
    # Fragment aggregation
    silence_seconds: float = 15.0
    max_window_seconds: float = 60.0
    max_fragments: int = 16

    # Dispatch
    dispatch_concurrency: int = 4
    dispatch_timeout_seconds: float = 25.0
    rate_limit_backoff_min_ms: int = 300
    rate_limit_backoff_max_ms: int = 800
    model: str = "openai/gpt-4o-mini"
    fallback_models: str = ""
    temperature: float = 0.7
    openrouter_api_key: str = ""
    openrouter_url: str = "https://openrouter.ai/api/v1/chat/completions"

    # LINE channel
    line_access_token: str = ""
    line_channel_secret: str = ""

    # History / registry
    redis_url: str = ""
    chat_ttl_seconds: int = 86400
    history_max_messages: int = 10

    # Turn handling
    intent_ttl_seconds: float = 1800.0
    products_csv: str = "products.csv"
    listing_terms: str = ""
    reassembler_enabled: bool = False
    fallback_message: str = DEFAULT_FALLBACK_MESSAGE

    # Ops
    admin_token: str = ""
    alert_bot_token: str = ""
    alert_chat_id: str = ""
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    def candidate_models(self) -> list[str]:
        """Primary model first, then fallbacks, without duplicates."""
        candidates: list[str] = []
        for name in [self.model, *_split_csv(self.fallback_models)]:
            if name and name not in candidates:
                candidates.append(name)
        return candidates

    def listing_term_list(self) -> list[str]:
        return _split_csv(self.listing_terms)


settings = Settings()
