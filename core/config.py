import logging
from pathlib import Path
from typing import Callable, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import SettingsError

# --- Base Path ---
BASE_DIR = Path(__file__).resolve().parent.parent
logger = logging.getLogger(__name__)

# --- Environment-based Settings ---

class AppSettings(BaseSettings):
    """
    Runtime tunables loaded from environment variables.
    The .env file is loaded automatically by pydantic-settings.
    """
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # --- General & Core ---
    LOG_LEVEL: str = Field("INFO", description="Log level for the application (e.g., DEBUG, INFO, WARNING, ERROR)")
    ECHOSPEAK_SETTINGS_PATH: Optional[str] = Field(None, description="Optional: Path to the provider/routing YAML file.")

    # --- Cache ---
    CACHE_DB_PATH: Optional[str] = Field(None, description="Optional: Path to the sqlite response cache.")
    CACHE_TTL_DAYS: int = Field(30, ge=1, description="Days a cached AI result stays valid.")

    # --- Dispatch ---
    MAX_CONCURRENCY: int = Field(3, ge=1, description="Maximum simultaneous outbound dispatches.")
    PROVIDER_TIMEOUT_SECONDS: float = Field(30.0, gt=0, description="HTTP timeout applied to every provider call.")
    CIRCUIT_BREAKER_THRESHOLD: int = Field(3, ge=1, description="Consecutive failures before a provider is skipped.")
    CIRCUIT_BREAKER_RESET_SECONDS: float = Field(30.0, ge=0, description="Cool-down before a skipped provider is probed again.")

# --- YAML-based Provider Configuration Models ---

class GeminiConfig(BaseModel):
    enabled: bool = True
    api_key: str = ""
    model: str = "gemini-3-flash-preview"

class OpenAICompatConfig(BaseModel):
    enabled: bool = False
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-3.5-turbo"

class DeepSeekConfig(OpenAICompatConfig):
    base_url: str = "https://api.deepseek.com"
    model: str = "deepseek-chat"

class QwenTextConfig(OpenAICompatConfig):
    base_url: str = "https://dashscope.aliyuncs.com/compatible-mode/v1"
    model: str = "qwen-plus"

class QwenAudioConfig(BaseModel):
    enabled: bool = False
    api_key: str = ""
    model: str = "qwen2-audio-instruct"

class DoubaoConfig(BaseModel):
    enabled: bool = False
    app_id: str = ""
    access_token: str = ""
    cluster: str = "volcano_tts"
    voice_type: str = "BV001_streaming"
    proxy_url: str = ""

class NewAPIConfig(OpenAICompatConfig):
    is_fallback: bool = Field(False, description="Append this gateway to every fallback queue.")

class ProvidersConfig(BaseModel):
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    deepseek: DeepSeekConfig = Field(default_factory=DeepSeekConfig)
    qwen_text: QwenTextConfig = Field(default_factory=QwenTextConfig)
    qwen_audio: QwenAudioConfig = Field(default_factory=QwenAudioConfig)
    doubao: DoubaoConfig = Field(default_factory=DoubaoConfig)
    newapi: NewAPIConfig = Field(default_factory=NewAPIConfig)

class ModelRouting(BaseModel):
    """Task kind -> preferred provider id. Unset tasks use the default order."""
    translation: Optional[str] = "gemini"
    explanation: Optional[str] = "gemini"
    rewriting: Optional[str] = "gemini"
    keywords: Optional[str] = None
    definition: Optional[str] = None
    speech_asr: Optional[str] = None
    speech_tts: Optional[str] = "doubao"
    audio_understanding: Optional[str] = "qwen-audio"

    def preferred_for(self, task: str) -> Optional[str]:
        return getattr(self, task, None)

class UserSettings(BaseModel):
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    model_routing: ModelRouting = Field(default_factory=ModelRouting)

# --- Settings Store ---

SettingsListener = Callable[[UserSettings], None]


class SettingsStore:
    """
    Owns the provider/routing settings and tells subscribers when they change.

    The file is optional: missing keys fall back to the model defaults, so a
    file containing only `providers: {deepseek: {api_key: ...}}` is valid.
    """
    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else None
        self._listeners: List[SettingsListener] = []
        self._current = self.load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def current(self) -> UserSettings:
        return self._current

    def load(self) -> UserSettings:
        """Load settings, falling back to defaults on any problem."""
        if self._path is None or not self._path.exists():
            return UserSettings()
        try:
            return load_user_settings(self._path)
        except SettingsError as e:
            logger.warning(f"Ignoring unreadable settings file {self._path}: {e}")
            return UserSettings()

    def reload(self) -> UserSettings:
        self._current = self.load()
        self._notify()
        return self._current

    def save(self, settings: UserSettings) -> None:
        """Persist settings (when a path is configured) and notify subscribers."""
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(settings.model_dump(mode="json"), f, sort_keys=False, allow_unicode=True)
        self._current = settings
        self._notify()

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._current)


def load_user_settings(path: Path) -> UserSettings:
    """Loads a YAML file and validates it as UserSettings."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        return UserSettings.model_validate(data)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        raise SettingsError(f"Invalid settings file '{path}': {e}") from e

# --- Global Instances ---
_app_settings: Optional[AppSettings] = None
_settings_store: Optional[SettingsStore] = None

def get_app_settings() -> AppSettings:
    """
    Returns a singleton AppSettings instance.
    Loading is deferred so that tests can set the environment first.
    """
    global _app_settings
    if _app_settings is None:
        _app_settings = AppSettings()
    return _app_settings

def get_settings_store() -> SettingsStore:
    """Returns the process-wide SettingsStore, created on first use."""
    global _settings_store
    if _settings_store is None:
        app = get_app_settings()
        path = Path(app.ECHOSPEAK_SETTINGS_PATH) if app.ECHOSPEAK_SETTINGS_PATH else BASE_DIR / 'configs' / 'settings.yml'
        _settings_store = SettingsStore(path)
    return _settings_store
