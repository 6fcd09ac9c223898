from __future__ import annotations

import logging

from playwright.sync_api import Error as PlaywrightError

from app.constants import PROMPT_INPUT_SELECTOR, SUBMIT_ICON_LABEL
from app.services.errors import SessionError, SessionLostError, SubmissionError

LOGGER = logging.getLogger("flow.submission")

SUBMIT_CLICKED = "clicked"
SUBMIT_DISABLED = "disabled"

# The submit button has no stable id; it is the button whose icon glyph reads ``label``.
_CLICK_SUBMIT_SCRIPT = """
(label) => {
  const buttons = Array.from(document.querySelectorAll("button"));
  const target = buttons.find((button) => {
    const icon = button.querySelector(".google-symbols");
    return icon && icon.textContent.trim() === label;
  });
  if (!target) {
    return "missing";
  }
  if (target.disabled) {
    return "disabled";
  }
  target.click();
  return "clicked";
}
"""


class SubmissionDriver:
    """Type one prompt into the tool and press its submit button."""

    def __init__(
        self,
        session,
        *,
        input_selector: str = PROMPT_INPUT_SELECTOR,
        submit_icon: str = SUBMIT_ICON_LABEL,
        type_delay_ms: int = 10,
    ) -> None:
        self._session = session
        self._input_selector = input_selector
        self._submit_icon = submit_icon
        self._type_delay_ms = type_delay_ms

    def ensure_ready(self, timeout: float) -> None:
        self._session.wait_for_selector(self._input_selector, timeout)

    def submit(self, text: str) -> None:
        try:
            self._session.type_text(self._input_selector, text, self._type_delay_ms)
            outcome = self._session.evaluate(_CLICK_SUBMIT_SCRIPT, self._submit_icon)
        except PlaywrightError as exc:
            if not self._session.is_connected():
                raise SessionLostError(f"Browser disconnected: {exc}") from exc
            raise SubmissionError(str(exc)) from exc
        finally:
            self._clear()
        if outcome == SUBMIT_DISABLED:
            raise SubmissionError("Submit button is disabled")
        if outcome != SUBMIT_CLICKED:
            raise SubmissionError("Submit button not found")
        LOGGER.debug("Submitted prompt (%s chars)", len(text))

    def _clear(self) -> None:
        if not self._session.is_connected():
            return
        try:
            self._session.clear_input(self._input_selector)
        except (PlaywrightError, SessionError) as exc:
            LOGGER.debug("Could not clear prompt input: %s", exc)
