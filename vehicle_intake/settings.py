from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field(default="sqlite:///./data/intake.db")
    state_dir: str = Field(default="./data/sessions")

    extractor_backend: str = Field(default="tesseract")  # tesseract | ollama
    policy_backend: str = Field(default="rules")  # rules | ollama
    ollama_host: str = Field(default="http://localhost:11434")
    ollama_vision_model: str = Field(default="llava")
    ollama_policy_model: str = Field(default="llama3.1")
    tesseract_lang: str = Field(default="tur+eng")
    render_dpi: int = Field(default=300)

    max_upload_bytes: int = Field(default=15 * 1024 * 1024)
    max_sessions: int = Field(default=64)  # in-memory sessions kept before idle ones are evicted
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_prefix="INTAKE_", case_sensitive=False)


settings = Settings()
