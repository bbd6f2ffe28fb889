import logging

from langchain_core.language_models import BaseChatModel
from langchain_openai import AzureChatOpenAI, ChatOpenAI

from autoheal.config.llm import AzureOpenAIChatConfig, ChatConfig, DeepSeekChatConfig, OpenAIChatConfig
from autoheal.exceptions import NoChatLLMConfigError
from autoheal.tracer import get_active_tracer

logger = logging.getLogger(__name__)


class ChatLLMFactory:
    @classmethod
    def build(cls, config: ChatConfig) -> BaseChatModel:
        """Build a LangChain chat model, wiring in the active tracer's callback."""
        tracer = get_active_tracer()
        callbacks = [tracer.callback_handler] if tracer is not None else None
        if isinstance(config, AzureOpenAIChatConfig):
            logger.debug("Building Azure OpenAI chat model for deployment %s", config.deployment)
            return AzureChatOpenAI(
                azure_endpoint=config.endpoint,
                azure_deployment=config.deployment,
                api_version=config.api_version,
                api_key=config.api_key,
                model=config.model,
                callbacks=callbacks,
                **config.chat_params(),
            )
        if isinstance(config, OpenAIChatConfig | DeepSeekChatConfig):
            logger.debug("Building OpenAI compatible chat model %s", config.model)
            return ChatOpenAI(
                base_url=config.endpoint,
                api_key=config.api_key,
                model=config.model,
                callbacks=callbacks,
                **config.chat_params(),
            )
        raise NoChatLLMConfigError(f'Unexpected Config: {config}')
