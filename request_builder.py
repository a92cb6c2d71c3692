"""Build the outgoing generation request for one chat turn."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Union

from config import AppConfig
from errors import InputError
from history import ROLE_MODEL, ROLE_USER, Turn, drop_trailing_user, normalize_history
from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)

_DATA_URI_RE = re.compile(r"^data:([a-zA-Z0-9]+/[a-zA-Z0-9\-.+]+);base64,(.+)$", re.S)


@dataclass(frozen=True)
class InlineMedia:
    """Binary content embedded directly in the request."""

    mime_type: str
    data: bytes

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


ContentItem = Union[str, InlineMedia]


@dataclass(frozen=True)
class OutgoingRequest:
    """Provider-neutral request: system framing, prior turns, current user content."""

    system_framing: Optional[str]
    turns: Tuple[Turn, ...]
    current_content: Tuple[ContentItem, ...]

    @property
    def has_media(self) -> bool:
        return any(isinstance(c, InlineMedia) for c in self.current_content)


def parse_data_uri(value: Any) -> Optional[InlineMedia]:
    """
    Parse ``data:<mime>;base64,<payload>`` into InlineMedia.

    Returns None when the string does not match or the payload is not base64.
    """
    if not isinstance(value, str):
        return None
    m = _DATA_URI_RE.match(value.strip())
    if not m:
        return None
    payload = re.sub(r"\s+", "", m.group(2))
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None
    if not data:
        return None
    return InlineMedia(mime_type=m.group(1), data=data)


class RequestBuilder:
    """Assemble OutgoingRequest values from raw chat input."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def _framing(self) -> Tuple[Optional[str], List[Turn], Optional[str]]:
        """Return (system_field, priming_turns, role_preceding_history)."""
        prompt = (self._config.system_prompt or "").strip()
        if not prompt:
            return None, [], None
        if self._config.system_placement == "priming":
            priming = [
                Turn(role=ROLE_USER, text=prompt),
                Turn(role=ROLE_MODEL, text=self._config.system_ack),
            ]
            return None, priming, ROLE_MODEL
        return prompt, [], None

    def build(
        self,
        message: Any = None,
        image: Any = None,
        history: Any = None,
    ) -> OutgoingRequest:
        """Build one request. Raises InputError when the current turn would be empty."""
        system_field, priming, previous_role = self._framing()

        turns = normalize_history(
            history,
            self._config.history_window,
            previous_role=previous_role,
        )
        # The current turn is a user turn; the provider rejects two in a row.
        turns = drop_trailing_user(turns)

        content: List[ContentItem] = []
        text = message.strip() if isinstance(message, str) else ""
        if text:
            content.append(text)

        media: Optional[InlineMedia] = None
        if image:
            media = parse_data_uri(image)
            if media is None:
                log.warning(
                    "Dropping malformed image data URI (len=%d prefix=%r)",
                    len(image) if isinstance(image, str) else -1,
                    image[:30] if isinstance(image, str) else type(image).__name__,
                )
                if not text:
                    raise InputError("Formato de imagem inválido")
            else:
                log.info("Image attached mime=%s bytes=%d", media.mime_type, len(media.data))

        if media is not None:
            if not text:
                content.append(self._config.default_image_prompt)
            content.append(media)

        if not content:
            content.append(self._config.default_greeting)

        return OutgoingRequest(
            system_framing=system_field,
            turns=tuple(priming + turns),
            current_content=tuple(content),
        )
