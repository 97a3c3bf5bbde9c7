"""
Data Model for BuildSwarm
=========================

Shared value types passed between the workflow manager, the build and
execution capabilities and the role agents.

Requests and results are frozen dataclasses: a BuildRequest is produced
fresh by the normalizer for every attempt and never mutated afterwards.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple


class Role(Enum):
    """Participants in the build conversation"""
    GENERATOR = "generator"
    COMPILER = "compiler"
    EXECUTOR = "executor"
    VALIDATOR = "validator"
    MANAGER = "manager"

    @property
    def author_name(self) -> str:
        return _AUTHOR_NAMES[self]


_AUTHOR_NAMES = {
    Role.GENERATOR: "CodeGenerator",
    Role.COMPILER: "CodeCompiler",
    Role.EXECUTOR: "CodeExecutor",
    Role.VALIDATOR: "CodeValidator",
    Role.MANAGER: "WorkflowManager",
}

# Fixed round-robin order. MANAGER never takes a slot.
ROLE_ORDER: Tuple[Role, ...] = (Role.GENERATOR, Role.COMPILER, Role.EXECUTOR, Role.VALIDATOR)


class AppModel(Enum):
    CONSOLE = "Console"
    GUI = "Gui"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["AppModel"]:
        """Lenient parse of 'console', 'GUI', 'gui', ...; None when unrecognized."""
        if not value:
            return None
        normalized = value.strip().lower()
        for model in cls:
            if model.value.lower() == normalized:
                return model
        return None


class UISession(Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"


class FailureCategory(Enum):
    COMPILE = "compile"
    EXECUTE = "execute"
    VALIDATE = "validate"


class WorkflowOutcome(Enum):
    """How a workflow run ended"""
    SUCCESS = "success"
    MAX_ITERATIONS = "max_iterations"


# =============================================================================
# CONVERSATION
# =============================================================================

@dataclass(frozen=True)
class ConversationTurn:
    """One message in the conversation. Directive turns are synthetic."""
    author: Role
    text: str
    index: int
    directive: bool = False
    target: Optional[Role] = None


class ConversationHistory:
    """Append-only ordered sequence of turns.

    Only the workflow manager appends; agents and auditors read.
    """

    def __init__(self):
        self._turns: List[ConversationTurn] = []

    def append(self, author: Role, text: str, directive: bool = False,
               target: Optional[Role] = None) -> ConversationTurn:
        turn = ConversationTurn(
            author=author,
            text=text,
            index=len(self._turns),
            directive=directive,
            target=target,
        )
        self._turns.append(turn)
        return turn

    def last(self) -> Optional[ConversationTurn]:
        return self._turns[-1] if self._turns else None

    def last_from(self, role: Role) -> Optional[ConversationTurn]:
        for turn in reversed(self._turns):
            if turn.author == role and not turn.directive:
                return turn
        return None

    def role_turns(self) -> List[ConversationTurn]:
        """Turns that consumed a role slot (no directives, no opening request)."""
        return [t for t in self._turns if not t.directive and t.author != Role.MANAGER]

    def turns(self) -> Tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(tuple(self._turns))

    def __len__(self) -> int:
        return len(self._turns)


# =============================================================================
# BUILD REQUEST
# =============================================================================

DEFAULT_SDK = "Microsoft.NET.Sdk"
DEFAULT_OUTPUT_TYPE = "Exe"
DEFAULT_TARGET_FRAMEWORK = "net10.0"
DEFAULT_NULLABLE = "enable"
DEFAULT_IMPLICIT_USINGS = "enable"


@dataclass(frozen=True)
class PackageReference:
    id: str
    version: Optional[str] = None


@dataclass(frozen=True)
class ProjectSettings:
    """Project-level build knobs written into the generated project file"""
    sdk: str = DEFAULT_SDK
    output_type: str = DEFAULT_OUTPUT_TYPE
    target_framework: str = DEFAULT_TARGET_FRAMEWORK
    nullable: str = DEFAULT_NULLABLE
    implicit_usings: str = DEFAULT_IMPLICIT_USINGS
    lang_version: Optional[str] = None
    use_windows_forms: bool = False
    use_wpf: bool = False
    allow_unsafe_blocks: bool = False
    enable_preview_features: bool = False
    treat_warnings_as_errors: Optional[bool] = None
    properties: Dict[str, str] = field(default_factory=dict)

    @property
    def is_gui(self) -> bool:
        return (self.use_windows_forms or self.use_wpf
                or self.output_type.strip().lower() == "winexe")


@dataclass(frozen=True)
class BuildRequest:
    code: str
    project: ProjectSettings = field(default_factory=ProjectSettings)
    package_references: Tuple[PackageReference, ...] = ()
    framework_references: Tuple[str, ...] = ()
    references: Tuple[str, ...] = ()


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class BuildResult:
    success: bool
    signature: str
    app_model: AppModel = AppModel.CONSOLE
    binary_path: Optional[str] = None
    artifact_dir: Optional[str] = None
    diagnostics: Tuple[str, ...] = ()
    primary_error: Optional[str] = None


@dataclass(frozen=True)
class RunMetadata:
    """Persisted next to a successful build as run-metadata.json"""
    app_model: AppModel
    target_framework: str
    output_type: str
    use_windows_forms: bool = False
    use_wpf: bool = False

    def to_dict(self) -> Dict:
        return {
            "appModel": self.app_model.value,
            "targetFramework": self.target_framework,
            "outputType": self.output_type,
            "useWindowsForms": self.use_windows_forms,
            "useWpf": self.use_wpf,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RunMetadata":
        return cls(
            app_model=AppModel.parse(data.get("appModel")) or AppModel.CONSOLE,
            target_framework=data.get("targetFramework", ""),
            output_type=data.get("outputType", DEFAULT_OUTPUT_TYPE),
            use_windows_forms=bool(data.get("useWindowsForms", False)),
            use_wpf=bool(data.get("useWpf", False)),
        )


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    app_model: AppModel
    exit_code: Optional[int] = None
    timed_out: bool = False
    stdout: str = ""
    stderr: str = ""
    interactive_fallback_used: bool = False
    ui_session: Optional[UISession] = None
    primary_error: Optional[str] = None
    notes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AuditSnapshot:
    compile_calls: int = 0
    execute_calls: int = 0

    def __sub__(self, other: "AuditSnapshot") -> "AuditSnapshot":
        return AuditSnapshot(
            compile_calls=self.compile_calls - other.compile_calls,
            execute_calls=self.execute_calls - other.execute_calls,
        )
