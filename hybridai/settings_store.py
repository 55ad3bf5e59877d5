import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import ValidationError

from .schemas import ChatSettings


logger = logging.getLogger("uvicorn.error")

SettingsListener = Callable[[ChatSettings], None]


class ChatSettingsStore:
    """Process-wide chat settings with an atomic get/replace contract.

    ``get`` returns the current frozen snapshot; ``replace`` swaps the
    reference and persists it. Listeners run after every replace.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._listeners: List[SettingsListener] = []
        self._state = self._load()

    def _load(self) -> ChatSettings:
        if self.path is None or not self.path.exists():
            return ChatSettings()
        try:
            return ChatSettings.model_validate(json.loads(self.path.read_text()))
        except (OSError, ValueError, ValidationError) as exc:
            logger.error("Invalid AI settings state in %s: %s", self.path, exc)
            return ChatSettings()

    def _persist(self, settings: ChatSettings) -> None:
        if self.path is None:
            return
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(settings.model_dump_json(indent=2))
        os.replace(tmp_path, self.path)

    def get(self) -> ChatSettings:
        return self._state

    def _swap(self, settings: ChatSettings) -> List[SettingsListener]:
        self._persist(settings)
        self._state = settings
        return list(self._listeners)

    def replace(self, settings: ChatSettings) -> ChatSettings:
        with self._lock:
            listeners = self._swap(settings)
        for listener in listeners:
            listener(settings)
        return settings

    def update(self, **changes) -> ChatSettings:
        with self._lock:
            settings = ChatSettings.model_validate({**self._state.model_dump(), **changes})
            listeners = self._swap(settings)
        for listener in listeners:
            listener(settings)
        return settings

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe
