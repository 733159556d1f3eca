import logging
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.config import AppSettings, SettingsStore, get_app_settings, get_settings_store
from core.errors import ParseError
from core.logging import setup_logging
from echospeak.adapters import GenRequest, RequestManager, Router, TaskType

logger = logging.getLogger(__name__)

# Bumping a version invalidates every cached result produced by that prompt.
PROMPT_VERSIONS = {
    "definition": "v1.0",
    "explain": "v1.0",
    "rewrite": "v1.0",
    "translate": "v1.0",
    "keywords": "v1.0",
}

ModelT = TypeVar("ModelT", bound=BaseModel)


class WordDefinition(BaseModel):
    word: str
    ipa: str
    meaning: str
    example: str
    type: str


class SentenceExplanation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    explanation: str
    grammar_points: List[str] = Field(default_factory=list, alias="grammarPoints")
    nuance: str = ""


class SentenceRewrites(BaseModel):
    formal: str
    casual: str
    concise: str


class KeywordList(BaseModel):
    keywords: List[str] = Field(default_factory=list)


class TutorService:
    """Language-tutoring operations on top of the request manager."""

    def __init__(self, manager: RequestManager, router: Router):
        self.manager = manager
        self.router = router

    async def get_word_definition(self, word: str, context_sentence: str) -> WordDefinition:
        """Get word definition with context analysis."""
        data = await self.manager.schedule(
            TaskType.DEFINITION,
            f"{word}|{context_sentence}",
            GenRequest(
                prompt=(
                    f'Analyze the word "{word}" in the context of this sentence: "{context_sentence}".\n'
                    "Provide the IPA pronunciation, a concise meaning in Chinese, a simple English example "
                    "sentence (different from the context), and the word type (noun, verb, etc).\n"
                    'Output JSON: { "word": "...", "ipa": "...", "meaning": "...", "example": "...", "type": "..." }'
                ),
                system_prompt="You are an English teacher assistant.",
                json_mode=True,
            ),
            PROMPT_VERSIONS["definition"],
            schema=WordDefinition,
        )
        return _validate(WordDefinition, data)

    async def explain_sentence(self, sentence: str) -> SentenceExplanation:
        """Explain a full sentence (grammar, nuance, usage)."""
        data = await self.manager.schedule(
            TaskType.EXPLANATION,
            sentence,
            GenRequest(
                prompt=(
                    f'Analyze this English sentence: "{sentence}".\n'
                    "1. Provide a clear explanation in Chinese.\n"
                    "2. List key grammar points.\n"
                    "3. Explain the nuance or tone (formal, casual, sarcastic, etc.).\n"
                    'Output JSON: { "explanation": "...", "grammarPoints": ["..."], "nuance": "..." }'
                ),
                system_prompt="You are an expert linguistics tutor.",
                json_mode=True,
            ),
            PROMPT_VERSIONS["explain"],
            schema=SentenceExplanation,
        )
        return _validate(SentenceExplanation, data)

    async def rewrite_sentence(self, sentence: str) -> SentenceRewrites:
        """Rewrite sentence in different styles."""
        data = await self.manager.schedule(
            TaskType.REWRITING,
            sentence,
            GenRequest(
                prompt=(
                    "Rewrite the following sentence in 3 styles: Formal, Casual, and Concise.\n"
                    f'Sentence: "{sentence}"\n'
                    'Output JSON: { "formal": "...", "casual": "...", "concise": "..." }'
                ),
                json_mode=True,
            ),
            PROMPT_VERSIONS["rewrite"],
            schema=SentenceRewrites,
        )
        return _validate(SentenceRewrites, data)

    async def translate_sentence(self, sentence: str, target_language: str = "Chinese") -> str:
        # the target language is part of the request identity
        data = await self.manager.schedule(
            TaskType.TRANSLATION,
            f"{target_language}|{sentence}",
            GenRequest(
                prompt=(
                    f"Translate the following sentence into {target_language}. "
                    f'Reply with the translation only.\nSentence: "{sentence}"'
                ),
                system_prompt="You are a professional subtitle translator.",
            ),
            PROMPT_VERSIONS["translate"],
        )
        return str(data).strip()

    async def extract_keywords(self, sentence: str) -> List[str]:
        data = await self.manager.schedule(
            TaskType.KEYWORDS,
            sentence,
            GenRequest(
                prompt=(
                    "List the words or phrases in this sentence most worth studying for an "
                    f'intermediate English learner.\nSentence: "{sentence}"\n'
                    'Output JSON: { "keywords": ["..."] }'
                ),
                json_mode=True,
            ),
            PROMPT_VERSIONS["keywords"],
            schema=KeywordList,
        )
        return _validate(KeywordList, data).keywords

    async def synthesize_speech(self, text: str) -> bytes:
        """Text-to-speech via the configured TTS provider. Not cached."""
        return await self.router.synthesize(text)


def _validate(model: Type[ModelT], data: object) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning(f"{model.__name__} did not match the model output: {e}")
        raise ParseError(f"Unexpected {model.__name__} shape: {e}") from e


def create_tutor_service(
    app: Optional[AppSettings] = None,
    store: Optional[SettingsStore] = None,
) -> TutorService:
    """Wire settings, logging, router, cache and manager into a TutorService."""
    app = app or get_app_settings()
    store = store or get_settings_store()
    setup_logging(app.LOG_LEVEL)
    router = Router.from_settings(store, app)
    manager = RequestManager.from_settings(router, app)
    logger.info(
        "Tutor service ready",
        extra={"healthy_providers": [p.name.value for p in router.registry.healthy()]},
    )
    return TutorService(manager, router)
