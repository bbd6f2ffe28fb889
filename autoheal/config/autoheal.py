from pydantic import BaseModel, Field
from typing_extensions import Annotated

from autoheal.config.invoker import InvokerConfig
from autoheal.config.llm import ChatConfig


class HealingConfig(BaseModel):
    max_healing_attempts: Annotated[int, Field(
        description="Healing attempts allowed per step before giving up",
        default=3, ge=1,
    )]
    max_timeout_ms: Annotated[int, Field(
        description="Cap for timeouts raised by healing strategies",
        default=60_000, ge=1000,
    )]
    max_heal_rounds: Annotated[int, Field(
        description="Heal and re-submit rounds the runner performs per plan",
        default=3, ge=0,
    )]


class AutoHealConfig(BaseModel):
    chat_llm: Annotated[ChatConfig | None, Field(default=None)]
    invoker: Annotated[InvokerConfig, Field(default_factory=InvokerConfig)]
    healing: Annotated[HealingConfig, Field(default_factory=HealingConfig)]
    capability: Annotated[str | None, Field(
        description="Import path 'module:attr' of a factory returning the execution capability",
        default=None,
    )]
    language: Annotated[str, Field(description="Language of the diagnostic prompt templates", default='en')]
    trace_dir: Annotated[str | None, Field(description="Directory for YAML trace files", default=None)]
