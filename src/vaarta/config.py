# vaarta: Environment-driven configuration constants in one module so other modules can import them without circular dependencies. Per-project overrides live in .vaarta/settings.yaml (see settings.py).

import os

# OpenAI-compatible endpoint (Chat Completions, streaming)
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
AI_MODEL = os.environ.get("AI_MODEL", "gpt-4o-mini")  # model id or Azure deployment name
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "")

# HTTP timeout for a model request, in seconds; a timeout surfaces as a stream failure.
HTTP_TIMEOUT_SEC = int(os.environ.get("VAARTA_HTTP_TIMEOUT", "600") or "600")

# Operator input history cap on load
INPUT_HISTORY_CAP = int(os.environ.get("VAARTA_INPUT_HISTORY_CAP", "500") or "500")

# Shell blocks run only when explicitly enabled (env or settings executors.shell).
ENABLE_SHELL = os.environ.get("VAARTA_ENABLE_SHELL", "0") == "1"

# Print [LOG] lines
VERBOSE = os.environ.get("VAARTA_VERBOSE", "0") == "1"

# Per-project state directory, relative to the working directory
STATE_DIR = ".vaarta"
