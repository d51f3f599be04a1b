"""Runtime configuration for the Spanish tutor client."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven runtime settings."""

    model_config = SettingsConfigDict(env_prefix="SPANISH_TUTOR_", env_file=".env", extra="ignore")

    app_name: str = "spanish-tutor"
    log_level: str = "INFO"
    api_base: str = Field(
        default="http://localhost:3000",
        description="Base URL of the relay exposing /stt, /chat and /tts.",
    )
    stt_path: str = "/stt"
    chat_path: str = "/chat"
    tts_path: str = "/tts"
    translate_path: str = "/api/translate"
    use_server_tts: bool = Field(
        default=True,
        description="Speak segments with relay /tts audio; false speaks them locally with pyttsx3.",
    )
    local_voice_id: str | None = None
    local_speech_rate: int | None = None
    request_timeout_seconds: float = 30.0
    state_file: str = Field(
        default="~/.spanish-tutor/state.json",
        description="Durable flags (permission, needs-resume) kept between runs.",
    )

    sample_rate: int = 16_000
    min_hold_seconds: float = 0.8
    wav_drain_seconds: float = 0.25
    mode_switch_failures: int = 2
    mode_switch_successes: int = 3

    stt_max_attempts: int = 3
    stt_backoff_seconds: float = 0.25

    cache_capacity: int = 20
    inter_item_pause_seconds: float = 0.2
    output_rotation_interval: int = 20


settings = Settings()
