"""
Gemini through the Cloud Code Assist backend used by the Gemini CLI.

Same content model as the public API; the request is wrapped in an envelope
naming the Google Cloud project, stream chunks are wrapped in ``response``,
and the credential is an OAuth access token plus project id serialized as
JSON.
"""

from __future__ import annotations

import json
import uuid
from typing import TYPE_CHECKING, Any

from agentloop.llm.models import Model
from agentloop.llm.providers.base import pop_option
from agentloop.llm.providers.google_generative import GoogleGenerativeAdapter
from agentloop.messages import AgentState, Message, TurnInput
from agentloop.types import ConfigError

if TYPE_CHECKING:
    from agentloop.agent import Agent

DEFAULT_ENDPOINT = "https://cloudcode-pa.googleapis.com"
USER_AGENT = "google-cloud-sdk vscode_cloudshelleditor/0.1"
API_CLIENT = "gl-node/22.17.0"
CLIENT_METADATA = json.dumps(
    {"ideType": "IDE_UNSPECIFIED", "platform": "PLATFORM_UNSPECIFIED", "pluginType": "GEMINI"},
    separators=(",", ":"),
)


def parse_credentials(api_key: str) -> tuple[str, str]:
    """``(token, project_id)`` from a ``{"token", "projectId"}`` JSON string."""
    try:
        parsed = json.loads(api_key)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(
            'Gemini CLI credentials must be JSON: {"token": ..., "projectId": ...}'
        ) from exc
    if not isinstance(parsed, dict):
        raise ConfigError("Gemini CLI credentials must be a JSON object")
    token = parsed.get("token")
    project_id = parsed.get("projectId")
    if not token or not project_id:
        raise ConfigError("Gemini CLI credentials need both 'token' and 'projectId'")
    return str(token), str(project_id)


class GeminiCliAdapter(GoogleGenerativeAdapter):
    api = "google-gemini-cli"

    def prepare_api_key(self, api_key: str, options: dict[str, Any]) -> str:
        token, project_id = parse_credentials(api_key)
        options["project_id"] = project_id
        return token

    def endpoint(self, model: Model, options: dict[str, Any]) -> str:
        base = (model.base_url or "").strip() or DEFAULT_ENDPOINT
        return f"{base.rstrip('/')}/v1internal:streamGenerateContent?alt=sse"

    def build_headers(
        self, model: Model, api_key: str, state: AgentState, options: dict[str, Any]
    ) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "User-Agent": USER_AGENT,
            "X-Goog-Api-Client": API_CLIENT,
            "Client-Metadata": CLIENT_METADATA,
        }
        if model.headers:
            headers.update(model.headers)
        return headers

    def build_body(
        self,
        agent: Agent,
        model: Model,
        state: AgentState,
        messages: list[Message],
        turn_input: TurnInput,
        options: dict[str, Any],
    ) -> dict[str, Any]:
        project_id = pop_option(options, "project_id")
        return {
            "project": project_id,
            "model": model.id,
            "request": self.build_request(agent, model, messages, options),
            "userAgent": "agentloop",
            "requestId": f"agentloop-{uuid.uuid4().hex}",
        }

    def unwrap(self, data: Any) -> dict | None:
        if not isinstance(data, dict):
            return None
        if isinstance(data.get("error"), dict):
            return data
        response = data.get("response")
        return response if isinstance(response, dict) else None
