"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class StorageConfig(BaseModel):
    """Where session documents live."""
    root: str = "~/.chatvault/features"


class BudgetConfig(BaseModel):
    """Request size budget."""
    limit: int = 100_000  # Estimated tokens per request
    compaction_threshold: float = 0.9  # Fraction of limit that triggers compaction

    @field_validator("limit")
    @classmethod
    def _positive_limit(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("limit must be positive")
        return v

    @field_validator("compaction_threshold")
    @classmethod
    def _threshold_range(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("compaction_threshold must be in (0, 1]")
        return v


class CompactionConfig(BaseModel):
    """Checkpoint compaction settings."""
    auto: bool = True  # Compact in the background when over threshold
    model: str = "anthropic/claude-sonnet-4-5"
    temperature: float = 0.3
    max_tokens: int = 2048
    summary_token_limit: int = 1000


class ProviderConfig(BaseModel):
    """LLM provider configuration."""
    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """Configuration for LLM providers."""
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)


class Config(BaseSettings):
    """Root configuration for chatvault."""
    storage: StorageConfig = Field(default_factory=StorageConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)

    @property
    def storage_path(self) -> Path:
        """Get expanded storage root."""
        return Path(self.storage.root).expanduser()

    def get_provider(self, model: str | None = None) -> ProviderConfig:
        """Get the provider config matching a model name.

        Falls back to the first provider with an API key: Anthropic > OpenAI > Gemini.
        """
        model = (model or self.compaction.model).lower()
        if "anthropic" in model or "claude" in model:
            return self.providers.anthropic
        if "openai" in model or "gpt" in model:
            return self.providers.openai
        if "gemini" in model:
            return self.providers.gemini

        for provider in [self.providers.anthropic, self.providers.openai, self.providers.gemini]:
            if provider.api_key:
                return provider
        return self.providers.anthropic

    class Config:
        env_prefix = "CHATVAULT_"
        env_nested_delimiter = "__"
