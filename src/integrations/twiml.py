"""TwiML documents returned to Twilio webhooks or pushed onto live calls."""

from __future__ import annotations

from xml.sax.saxutils import escape

from bot.actions import ActionKind, CallAction
from config.settings import Settings

WEBHOOK_PREFIX = "/api/twilio"


def _attr(value: str) -> str:
    return escape(value, {"\"": "&quot;", "'": "&apos;"})


def document(*verbs: str) -> str:
    return "<?xml version=\"1.0\" encoding=\"UTF-8\"?><Response>" + "".join(verbs) + "</Response>"


def say(text: str, *, voice: str = "", language: str | None = None) -> str:
    attrs = ""
    if voice:
        attrs += f" voice=\"{_attr(voice)}\""
    if language:
        attrs += f" language=\"{_attr(language)}\""
    return f"<Say{attrs}>{escape(text)}</Say>"


def gather(
    *,
    action_url: str,
    timeout: int,
    inner: str = "",
    speech_timeout: str = "auto",
    speech_model: str | None = None,
    language: str | None = None,
    partial_result_url: str | None = None,
) -> str:
    attrs = (
        " input=\"speech\""
        f" action=\"{_attr(action_url)}\""
        " method=\"POST\""
        f" timeout=\"{max(1, int(timeout))}\""
        f" speechTimeout=\"{_attr(speech_timeout)}\""
        " bargeIn=\"true\""
    )
    if partial_result_url:
        attrs += f" partialResultCallback=\"{_attr(partial_result_url)}\""
    if speech_model:
        attrs += f" speechModel=\"{_attr(speech_model)}\""
    if language:
        attrs += f" language=\"{_attr(language)}\""
    return f"<Gather{attrs}>{inner}</Gather>"


def hangup() -> str:
    return "<Hangup/>"


def pause(seconds: int) -> str:
    return f"<Pause length=\"{int(seconds)}\"/>" if seconds > 0 else ""


def redirect(url: str) -> str:
    return f"<Redirect method=\"POST\">{escape(url)}</Redirect>"


def play_digits(digits: str) -> str:
    return f"<Play digits=\"{_attr(digits)}\"/>"


class TwimlRenderer:
    """Turns :class:`CallAction` values into TwiML using the configured voice and webhooks."""

    def __init__(self, settings: Settings, *, base_url: str | None = None) -> None:
        self._settings = settings
        self._base_url = (base_url if base_url is not None else settings.public_base_url or "").rstrip("/")

    def url(self, endpoint: str) -> str:
        return f"{self._base_url}{WEBHOOK_PREFIX}/{endpoint}"

    def _say(self, text: str) -> str:
        return say(text, voice=self._settings.twilio_voice, language=self._settings.twilio_language)

    def _gather(self, text: str) -> str:
        settings = self._settings
        return gather(
            action_url=self.url("transcription_callback"),
            timeout=settings.twilio_default_timeout,
            inner=self._say(text) if text else "",
            speech_model=settings.twilio_speech_model,
            language=settings.twilio_language,
            partial_result_url=self.url("partial_callback") if settings.partial_processing else None,
        )

    def render(self, action: CallAction) -> str:
        if action.kind is ActionKind.SPEAK:
            return document(self._gather(action.text))
        if action.kind is ActionKind.SPEAK_AND_HANGUP:
            return document(self._say(action.text) if action.text else "", hangup())
        if action.kind is ActionKind.PLAY_DIGITS:
            return document(play_digits(action.digits), self._gather(""))
        if action.kind is ActionKind.POLL_QUEUE:
            return document(
                self._say(action.text) if action.text else "",
                pause(self._settings.queue_redirect_pause_seconds),
                redirect(self.url("call_queue")),
            )
        raise ValueError(f"Unsupported action kind: {action.kind}")
