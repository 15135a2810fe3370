from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from api.shared.exceptions import ConfigurationError

DEFAULT_API_TIMEOUT_SECONDS = 30.0
COMPLETIONS_PATH = "/chat/completions"


class CustomSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


class AppSettings(CustomSettings):
    ENVIRONMENT: Literal["local", "dev", "prod"] = Field(default="local")
    LOG_LEVEL: str = Field(default="DEBUG")
    JSON_LOGS: bool = Field(default=True)


class ChatGPTSettings(CustomSettings):
    """Upstream completion service configuration.

    Env vars:
    - GPT_API_KEY (required)
    - GPT_INSTRUCTION_FILE_PATH / GPT_INSTRUCTION_TEXT (one of them)
    - GPT_API_TIMEOUT_SECOND
    - GPT_API_URL
    - GPT_MODEL
    """

    GPT_API_KEY: SecretStr
    GPT_INSTRUCTION_FILE_PATH: str = Field(default="")
    GPT_INSTRUCTION_TEXT: str = Field(default="")
    GPT_API_TIMEOUT_SECOND: float = Field(default=DEFAULT_API_TIMEOUT_SECONDS)
    GPT_API_URL: str = Field(default="https://api.openai.com/v1/chat/completions")
    GPT_MODEL: str = Field(default="gpt-3.5-turbo")

    @model_validator(mode="after")
    def normalize_timeout(self):
        if self.GPT_API_TIMEOUT_SECOND <= 0:
            self.GPT_API_TIMEOUT_SECOND = DEFAULT_API_TIMEOUT_SECONDS
        return self

    @property
    def base_url(self) -> str:
        """The OpenAI client wants the API root, not the completions endpoint."""
        url = self.GPT_API_URL.rstrip("/")
        if url.endswith(COMPLETIONS_PATH):
            url = url[: -len(COMPLETIONS_PATH)]
        return url


class ServerSettings(CustomSettings):
    HOST: str = Field(default="0.0.0.0")
    # Heroku sets the PORT value automatically.
    PORT: int = Field(default=8080)
    SHUTDOWN_TIMEOUT: float = Field(default=30.0)
    HTTP_API_TIMEOUT: float = Field(default=30.0)


class Settings(BaseModel):
    APP: AppSettings = Field(default_factory=AppSettings)
    CHATGPT: ChatGPTSettings = Field(default_factory=ChatGPTSettings)
    SERVER: ServerSettings = Field(default_factory=ServerSettings)


def load_settings() -> Settings:
    try:
        return Settings(APP=AppSettings(), CHATGPT=ChatGPTSettings(), SERVER=ServerSettings())
    except ValidationError as e:
        missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ConfigurationError(
            f"Invalid or missing configuration: {', '.join(missing)}",
            details={"fields": missing},
        ) from e


@lru_cache
def get_settings() -> Settings:
    return load_settings()
