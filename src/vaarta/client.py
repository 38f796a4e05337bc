# vaarta: Minimal streaming client for OpenAI-compatible Chat Completions. Provider autodetection (OpenAI / Azure OpenAI) follows args > settings > environment; every request returns a cancellable StreamingSession.

import json
import os
import pathlib
import time
from typing import Any, Dict, List, Optional

import requests

from .config import AI_MODEL, HTTP_TIMEOUT_SEC, OPENAI_API_KEY, OPENAI_BASE_URL
from .context import Context
from .errors import ConfigurationError, TransportFailure
from .settings import section
from .streaming import StreamingSession


def _looks_like_azure(url: Optional[str]) -> bool:
    if not url:
        return False
    u = url.lower()
    return ("azure.com" in u) or ("/openai/" in u)


class ChatCompletionsClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize an HTTP client for streamed chat completions.

        Provider selection precedence (highest first):
          1) Constructor args (api_key/model/base_url)
          2) settings['api'] values (provider, api_key, model, base_url, timeout)
          3) Environment
             - OpenAI: OPENAI_API_KEY, AI_MODEL, OPENAI_BASE_URL
             - Azure:  AZURE_OPENAI_API_KEY, AZURE_OPENAI_MODEL, AZURE_OPENAI_ENDPOINT

        Missing values do not raise here; ensure_configured() reports them
        before the first request so no turn is pushed for a doomed call.
        """
        self.session = requests.Session()
        self.settings = settings or {}
        api_cfg = section(self.settings, "api")

        provider: Optional[str] = str(api_cfg.get("provider") or "").strip().lower() or None
        if provider not in ("azure", "openai"):
            if (os.environ.get("AZURE_OPENAI_API_KEY") or os.environ.get("AZURE_OPENAI_ENDPOINT")) or _looks_like_azure(base_url or api_cfg.get("base_url")):
                provider = "azure"
            else:
                provider = "openai"

        self.problems: List[str] = []
        if provider == "azure":
            resolved_api_key = api_key or api_cfg.get("api_key") or os.environ.get("AZURE_OPENAI_API_KEY")
            resolved_model = model or api_cfg.get("model") or os.environ.get("AZURE_OPENAI_MODEL")
            endpoint = base_url or api_cfg.get("base_url") or os.environ.get("AZURE_OPENAI_ENDPOINT")
            if endpoint:
                # Normalize to {endpoint}/openai/v1
                endpoint = endpoint.rstrip("/")
                if not endpoint.endswith("/openai/v1"):
                    endpoint = f"{endpoint}/v1" if endpoint.endswith("/openai") else f"{endpoint}/openai/v1"
            else:
                self.problems.append("Azure provider selected but no endpoint provided (AZURE_OPENAI_ENDPOINT or settings.api.base_url).")
            if not resolved_api_key:
                self.problems.append("Azure provider selected but no API key provided (AZURE_OPENAI_API_KEY or settings.api.api_key).")
            if not resolved_model:
                self.problems.append("Azure provider selected but no model deployment provided (AZURE_OPENAI_MODEL or settings.api.model).")
            self.session.headers.update({"api-key": resolved_api_key or "", "Content-Type": "application/json"})
            resolved_base_url = endpoint or ""
        else:  # openai
            resolved_api_key = api_key or api_cfg.get("api_key") or OPENAI_API_KEY
            resolved_model = model or api_cfg.get("model") or AI_MODEL
            resolved_base_url = base_url or api_cfg.get("base_url") or OPENAI_BASE_URL or "https://api.openai.com/v1"
            # Ensure /v1 suffix
            resolved_base_url = resolved_base_url.rstrip("/")
            if not resolved_base_url.endswith("/v1"):
                resolved_base_url = f"{resolved_base_url}/v1"
            if not resolved_api_key:
                self.problems.append("OpenAI provider selected but no API key provided (OPENAI_API_KEY or settings.api.api_key).")
            if not resolved_model:
                self.problems.append("No model configured (AI_MODEL or settings.api.model).")
            self.session.headers.update({"Authorization": f"Bearer {resolved_api_key or ''}", "Content-Type": "application/json"})

        self.model = resolved_model
        self.base_url = resolved_base_url
        self.provider = provider
        self.timeout = float(timeout or api_cfg.get("timeout") or HTTP_TIMEOUT_SEC)

    def chat_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def ensure_configured(self) -> None:
        """Raise ConfigurationError when a credential, model or endpoint is missing."""
        if self.problems:
            raise ConfigurationError(" ".join(self.problems))

    def build_payload(self, messages: List[Dict[str, str]], prefix: Optional[str] = None, model: Optional[str] = None) -> Dict[str, Any]:
        """
        Build the streaming request body.

        A continuation prefix is sent as a trailing assistant message so the
        server continues that fragment as its own turn.
        """
        outgoing = [dict(m) for m in messages]
        if prefix:
            outgoing.append({"role": "assistant", "content": prefix})
        return {"model": model or self.model, "messages": outgoing, "stream": True}

    def open_stream(
        self,
        ctx: Context,
        messages: List[Dict[str, str]],
        prefix: Optional[str] = None,
        model: Optional[str] = None,
    ) -> StreamingSession:
        """
        Start a streamed completion and return its session.

        Raises:
            ConfigurationError: If the client is missing credentials or endpoint.
            TransportFailure: On connection errors, timeouts or non-200 responses.
        """
        self.ensure_configured()
        url = self.chat_url()
        payload = self.build_payload(messages, prefix=prefix, model=model)
        self._maybe_dump_request(ctx, url, payload)

        ctx.log(f"POST {url} (model={payload['model']}, messages={len(payload['messages'])})")
        try:
            r = self.session.post(url, json=payload, stream=True, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransportFailure(f"Chat Completions API timeout: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportFailure(f"Chat Completions API request failed: {e}") from e

        if r.status_code != 200:
            # Surface first 2KB of body for fast diagnostics without overwhelming logs.
            body = r.text[:2000]
            r.close()
            raise TransportFailure(f"Chat Completions API error {r.status_code}: {body}")

        return StreamingSession(r.iter_lines(), close=r.close)

    def _maybe_dump_request(self, ctx: Context, url: str, payload: Dict[str, Any]) -> None:
        """Write the request to <workdir>/.httpcalls when settings.logging.httpcalls.enabled is set."""
        log_cfg = section(section(self.settings, "logging"), "httpcalls")
        if not log_cfg.get("enabled"):
            return
        custom_dir = log_cfg.get("dir")
        base_dir = pathlib.Path(str(custom_dir)) if custom_dir else pathlib.Path(".httpcalls")
        if not base_dir.is_absolute():
            base_dir = ctx.workdir / base_dir
        try:
            base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            ctx.log(f"Could not create {base_dir}: {e}")
            return
        headers_for_log = dict(self.session.headers)
        if "Authorization" in headers_for_log:
            headers_for_log["Authorization"] = "Bearer {{OPENAI_API_KEY}}"
        if "api-key" in headers_for_log:
            headers_for_log["api-key"] = "{{AZURE_OPENAI_API_KEY}}"
        http_file = base_dir / f"call-{int(time.time() * 1000)}.http"
        dumpHttpFile(ctx, str(http_file), url, "POST", headers_for_log, payload)


def dumpHttpFile(ctx: Context, file: str, url: str, method: str, headers: Dict[str, str], obj: Any) -> None:
    """
    Write a human-readable HTTP request dump to disk for debugging.

    Args:
        ctx: Context used to report the outcome.
        file: Destination file path for the dump.
        url: The target URL of the request.
        method: HTTP verb (GET/POST/...).
        headers: Request headers that will be sent.
        obj: JSON-serializable body object that will be pretty-printed.

    Notes:
        - This helper is best-effort: serialization and I/O errors are logged
          instead of raised.
        - The object is serialized with ensure_ascii=False to preserve unicode.
    """
    try:
        json_str = json.dumps(obj, indent=2, ensure_ascii=False)
        with open(file, "w", encoding="utf-8") as f:
            f.write(f"{method.upper()} {url}\n")
            for key, value in headers.items():
                f.write(f"{key}: {value}\n")
            f.write("\n")
            f.write(json_str)
        ctx.log(f"HTTP request dumped to {file}")
    except TypeError as e:
        ctx.log(f"The request body could not be serialized to JSON: {e}")
    except OSError as e:
        ctx.log(f"Could not write to file {file}: {e}")
