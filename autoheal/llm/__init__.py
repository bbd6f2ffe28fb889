from .factory import ChatLLMFactory
