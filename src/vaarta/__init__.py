from .blocks import extract_blocks, last_block
from .client import ChatCompletionsClient
from .errors import ConfigurationError, InvalidRewindTarget, InvalidTransition, TransportFailure, VaartaError
from .executors import ExecutorAdapter, ExecutorRegistry, PythonExecutor, ShellExecutor, build_default_registry
from .models import Actor, Failure, FencedBlock, Success, Turn, serialize_result
from .orchestrator import ConversationState, Orchestrator
from .store import ContextStore
from .streaming import StreamingSession
from .transcript import ConsoleSink, DisplaySink, TranscriptSink, locate_step

__version__ = "0.1.0"
