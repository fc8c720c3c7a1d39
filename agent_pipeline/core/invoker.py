"""Agent invoker adapters: the boundary to the external reasoning provider."""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import requests
from pydantic import ValidationError

from ..models.core import AgentOutput, ContextOutput
from .exceptions import InvocationError, InvocationErrorKind
from .logging import get_logger
from .rate_limiter import FixedWindowRateLimiter

logger = get_logger(__name__)

DEFAULT_TASK = "Analyze and provide recommendations."


class AgentInvoker(ABC):
    """One call to an external reasoning provider.

    Implementations must not retry; the step runner owns the retry policy.
    They return a payload matching ``AgentOutput`` or raise ``InvocationError``.
    """

    @abstractmethod
    def invoke(
        self,
        system_prompt: str,
        instructions: str,
        context_outputs: Sequence[ContextOutput],
        use_internet_context: bool
    ) -> Dict[str, Any]:
        """Invoke the agent and return its structured output."""


def validate_output(payload: Any) -> Dict[str, Any]:
    """Check a provider payload against the fixed output shape.

    The payload itself is returned as given, extra keys included.

    Raises:
        InvocationError: With kind ``malformed_output`` if the payload does not conform
    """
    if not isinstance(payload, dict):
        raise InvocationError(
            f"Agent returned {type(payload).__name__}, expected an object",
            kind=InvocationErrorKind.MALFORMED_OUTPUT
        )
    try:
        AgentOutput.model_validate(payload)
    except ValidationError as e:
        raise InvocationError(
            f"Agent output does not match the expected shape: {e.error_count()} error(s)",
            kind=InvocationErrorKind.MALFORMED_OUTPUT,
            details={"validation_errors": e.errors(include_url=False)}
        )
    return payload


class HttpAgentInvoker(AgentInvoker):
    """Invoker for an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        temperature: float = 0.2,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        rate_limit_key: str = "default",
        internet_context_param: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        """
        Args:
            base_url: Provider URL, without the ``/v1/chat/completions`` suffix
            api_key: Bearer token for the provider
            model: Model name sent with every request
            timeout: Per-request timeout in seconds
            temperature: Sampling temperature
            rate_limiter: Optional limiter consulted before every request
            rate_limit_key: Identifier the limiter counts requests under
            internet_context_param: Request body field that carries the
                use_internet_context flag, for providers that support one
            session: Optional requests session (connection pooling, testing)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.rate_limiter = rate_limiter
        self.rate_limit_key = rate_limit_key
        self.internet_context_param = internet_context_param
        self._session = session or requests.Session()

    def build_messages(
        self,
        system_prompt: str,
        instructions: str,
        context_outputs: Sequence[ContextOutput],
        use_internet_context: bool
    ) -> List[Dict[str, str]]:
        context = {
            "previous_outputs": [
                {"agent": item.agent_name, "output": item.output} for item in context_outputs
            ],
            "use_internet_context": use_internet_context,
        }
        schema = json.dumps(AgentOutput.model_json_schema())
        return [
            {"role": "system", "content": f"{system_prompt}\n\nRespond with a JSON object matching this schema: {schema}"},
            {"role": "user", "content": f"Context: {json.dumps(context, default=str)}\n\nTask: {instructions or DEFAULT_TASK}"},
        ]

    def invoke(
        self,
        system_prompt: str,
        instructions: str,
        context_outputs: Sequence[ContextOutput],
        use_internet_context: bool
    ) -> Dict[str, Any]:
        if self.rate_limiter is not None:
            decision = self.rate_limiter.check(self.rate_limit_key)
            if not decision.allowed:
                raise InvocationError(
                    f"Rate limit exceeded, resets in {decision.reset_in}s",
                    kind=InvocationErrorKind.RATE_LIMITED,
                    retry_after=decision.reset_in
                )

        body: Dict[str, Any] = {
            "model": self.model,
            "messages": self.build_messages(system_prompt, instructions, context_outputs, use_internet_context),
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }
        if self.internet_context_param:
            body[self.internet_context_param] = use_internet_context

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._session.post(
                f"{self.base_url}/v1/chat/completions",
                json=body,
                headers=headers,
                timeout=self.timeout
            )
        except requests.Timeout:
            raise InvocationError(
                f"Agent call timed out after {self.timeout}s", kind=InvocationErrorKind.TIMEOUT
            )
        except requests.RequestException as e:
            raise InvocationError(f"Agent call failed: {e}", kind=InvocationErrorKind.TRANSPORT)

        if response.status_code == 429:
            raise InvocationError(
                "Provider rate limit exceeded",
                kind=InvocationErrorKind.RATE_LIMITED,
                status_code=response.status_code
            )
        if response.status_code >= 400:
            raise InvocationError(
                f"Agent call failed: {response.status_code} - {response.text[:500]}",
                kind=InvocationErrorKind.PROVIDER,
                status_code=response.status_code
            )

        return validate_output(self._extract_payload(response))

    @staticmethod
    def _extract_payload(response: requests.Response) -> Any:
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise InvocationError(
                "Provider response has no message content",
                kind=InvocationErrorKind.MALFORMED_OUTPUT
            )

        if isinstance(content, dict):
            return content
        try:
            return json.loads(content)
        except (TypeError, ValueError):
            raise InvocationError(
                "Agent response is not valid JSON",
                kind=InvocationErrorKind.MALFORMED_OUTPUT
            )

    def close(self) -> None:
        self._session.close()
