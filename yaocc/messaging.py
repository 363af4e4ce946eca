"""Messaging transport capability consumed by the agent core."""

from typing import Protocol, runtime_checkable

# Prefixes a reply line can carry to ask the transport to send media.
MEDIA_MARKERS = {
    "image": "#IMAGE#:",
    "audio": "#AUDIO#:",
    "video": "#VIDEO#:",
    "document": "#DOC#:",
    "base64_image": "#BASE64_IMAGE#:",
}


@runtime_checkable
class Provider(Protocol):
    """A live chat transport (e.g. a bot) bound to the current session."""

    def name(self) -> str:
        """Unique transport name such as "telegram"."""
        ...

    def send_message(self, target_id: str, text: str) -> None: ...

    def system_prompt_instruction(self) -> str:
        """Extra guidance appended to the system prompt ("" for none)."""
        ...
