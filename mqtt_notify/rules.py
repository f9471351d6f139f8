"""Rule matching: pick the notification text for an inbound message."""

from mqtt_notify.core import Config

FALLBACK_PREFIX = "Received message: "


def decide(config: Config, topic: str, message_text: str) -> str:
    """Return the response text for a message on `topic`.

    Mappings are checked in declaration order and a mapping's topic must equal
    the reported topic exactly (no wildcard semantics). Within a mapping the
    first applicable action wins. Without any applicable action the message is
    echoed with FALLBACK_PREFIX.
    """
    for mapping in config.mappings:
        if mapping.topic != topic:
            continue
        for action in mapping.actions:
            if action.is_applicable(message_text):
                return action.response_text()
    return f"{FALLBACK_PREFIX}{message_text}"
