"""Hidden form submission.

Submits the token request as a real HTML form POST, in the current
context or a named popup. A form submission's response cannot be read
programmatically, so the flow parks until the IdP's JSON is handed back,
either pasted in or posted by the bookmarklet.
"""

from __future__ import annotations

import html
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import PopupBlockedError
from ..models import ExchangeMode, TokenResult
from ..telemetry import trace_operation
from .base import ExchangeStrategy

if TYPE_CHECKING:
    from ..browser import BrowserContext
    from ..core.token_ops import TokenOperations
    from ..models import AuthSession


@dataclass(frozen=True)
class HiddenForm:
    """An auto-submitting form POST."""

    action: str
    fields: dict[str, str] = field(default_factory=dict)
    target: str | None = None
    method: str = "post"

    def render_html(self) -> str:
        """Render a page that submits the form as soon as it loads."""
        inputs = "\n".join(
            f'    <input type="hidden" name="{html.escape(name)}" value="{html.escape(value)}">'
            for name, value in self.fields.items()
        )
        target = f' target="{html.escape(self.target)}"' if self.target else ""
        return (
            "<!doctype html>\n"
            "<html><body>\n"
            f'  <form id="token-form" method="{self.method}" '
            f'action="{html.escape(self.action)}"{target}>\n'
            f"{inputs}\n"
            "  </form>\n"
            "  <script>document.getElementById('token-form').submit();</script>\n"
            "</body></html>\n"
        )


def bookmarklet(state: str, origin: str) -> str:
    """Script to run on the IdP's JSON page to send the response back.

    Posts ``{type: "token_response", state, payload}`` to the opener.
    """
    return (
        "javascript:(()=>{window.opener.postMessage({type:'token_response',"
        f"state:{json.dumps(state)},payload:JSON.parse(document.body.innerText)}},"
        f"{json.dumps(origin)});}})()"
    )


class FormPostStrategy(ExchangeStrategy):
    """Submits the token request as a form and awaits external confirmation."""

    mode = ExchangeMode.FORM

    def __init__(
        self,
        browser: BrowserContext,
        *,
        mode: ExchangeMode = ExchangeMode.FORM,
        popup_name: str = "oidc_probe_popup",
        token_ops: TokenOperations | None = None,
    ) -> None:
        super().__init__(token_ops)
        if mode not in (ExchangeMode.FORM, ExchangeMode.FORM_POPUP):
            msg = f"FormPostStrategy does not handle {mode}"
            raise ValueError(msg)
        self.mode = mode
        self.browser = browser
        self.popup_name = popup_name

    async def exchange(self, session: AuthSession, code: str) -> TokenResult:
        endpoint = self.token_ops.require_token_endpoint(session.token_endpoint)
        form_fields = self.token_ops.build_authorization_code_request(session, code)
        in_popup = self.mode is ExchangeMode.FORM_POPUP

        with trace_operation(
            "oidc.token.form_post",
            attributes={"http.url": endpoint, "form.popup": in_popup},
        ):
            target = None
            if in_popup:
                if self.browser.open_window("about:blank", self.popup_name) is None:
                    raise PopupBlockedError()
                target = self.popup_name

            form = HiddenForm(action=endpoint, fields=form_fields, target=target)
            self.browser.submit_form(form, target=target)

        return TokenResult.awaiting_confirmation(
            "Form submitted. Send the IdP's JSON response back to complete the login.",
            exchange_mode=self.mode,
            details={
                "token_endpoint": endpoint,
                "target": target,
                "bookmarklet": bookmarklet(session.state, self.browser.origin),
            },
        )
