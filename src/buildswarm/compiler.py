"""
Build Cache & Compiler
======================

Compiles one BuildRequest into a runnable assembly:

    normalize -> signature -> cache lookup -> temp project -> dotnet build
    -> copy output to GeneratedArtifacts/Run_<UTC timestamp> -> run-metadata.json

Identical requests arriving inside the dedup window get the cached result
back without launching the compiler. Every call, cache hit or not, is
registered with the audit counters.
"""

import json
import logging
import os
import re
import shutil
import tempfile
import time
from collections import OrderedDict
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Iterable, List, Optional, Tuple
from xml.sax.saxutils import escape

from .audit import AuditCounters
from .build_request import PROPERTY_NAME_RE, build_signature, normalize_build_request
from .config import BuildSettings
from .models import AppModel, BuildRequest, BuildResult, RunMetadata
from .process_runner import ProcessRunner

logger = logging.getLogger(__name__)

ASSEMBLY_NAME = "App"
PROJECT_FILE = f"{ASSEMBLY_NAME}.csproj"
SOURCE_FILE = "Program.cs"
GLOBAL_JSON = "global.json"
RUN_METADATA_FILE = "run-metadata.json"

NO_CODE_ERROR = "No source code found in compile input."


class BuildCache:
    """Bounded signature -> BuildResult map with a time-to-live."""

    def __init__(self, ttl_seconds: float = 15.0, max_entries: int = 32,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[BuildResult, float]]" = OrderedDict()
        self._lock = Lock()

    def get(self, signature: str) -> Optional[BuildResult]:
        with self._lock:
            entry = self._entries.get(signature)
            if entry is None:
                return None
            result, stored_at = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[signature]
                return None
            return result

    def put(self, signature: str, result: BuildResult):
        with self._lock:
            self._entries.pop(signature, None)
            self._entries[signature] = (result, self._clock())
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# =============================================================================
# PROJECT MATERIALIZATION
# =============================================================================

def _xml(value: str) -> str:
    return escape(value, {'"': "&quot;", "'": "&apos;"})


def build_project_file(request: BuildRequest) -> str:
    """Render App.csproj for a request."""
    project = request.project
    lines = [
        f'<Project Sdk="{_xml(project.sdk.strip() or "Microsoft.NET.Sdk")}">',
        "  <PropertyGroup>",
        f"    <OutputType>{_xml(project.output_type)}</OutputType>",
        f"    <TargetFramework>{_xml(project.target_framework)}</TargetFramework>",
        f"    <AssemblyName>{ASSEMBLY_NAME}</AssemblyName>",
        f"    <Nullable>{_xml(project.nullable)}</Nullable>",
        f"    <ImplicitUsings>{_xml(project.implicit_usings)}</ImplicitUsings>",
    ]
    if project.lang_version:
        lines.append(f"    <LangVersion>{_xml(project.lang_version)}</LangVersion>")
    if project.use_windows_forms:
        lines.append("    <UseWindowsForms>true</UseWindowsForms>")
    if project.use_wpf:
        lines.append("    <UseWPF>true</UseWPF>")
    if project.allow_unsafe_blocks:
        lines.append("    <AllowUnsafeBlocks>true</AllowUnsafeBlocks>")
    if project.enable_preview_features:
        lines.append("    <EnablePreviewFeatures>true</EnablePreviewFeatures>")
    if project.treat_warnings_as_errors is not None:
        value = "true" if project.treat_warnings_as_errors else "false"
        lines.append(f"    <TreatWarningsAsErrors>{value}</TreatWarningsAsErrors>")
    for name in sorted(project.properties, key=str.lower):
        if PROPERTY_NAME_RE.match(name):
            lines.append(f"    <{name}>{_xml(project.properties[name])}</{name}>")
    lines.append("  </PropertyGroup>")

    if request.package_references:
        lines.append("  <ItemGroup>")
        for package in request.package_references:
            if package.version:
                lines.append(f'    <PackageReference Include="{_xml(package.id)}" Version="{_xml(package.version)}" />')
            else:
                lines.append(f'    <PackageReference Include="{_xml(package.id)}" />')
        lines.append("  </ItemGroup>")

    if request.framework_references:
        lines.append("  <ItemGroup>")
        for reference in request.framework_references:
            lines.append(f'    <FrameworkReference Include="{_xml(reference)}" />')
        lines.append("  </ItemGroup>")

    if request.references:
        lines.append("  <ItemGroup>")
        for path in request.references:
            include = os.path.splitext(os.path.basename(path.replace("\\", "/")))[0] or "ExternalReference"
            lines.append(f'    <Reference Include="{_xml(include)}">')
            lines.append(f"      <HintPath>{_xml(path)}</HintPath>")
            lines.append("    </Reference>")
        lines.append("  </ItemGroup>")

    lines.append("</Project>")
    return "\n".join(lines) + "\n"


def find_global_json(start_dirs: Iterable[str]) -> Optional[str]:
    """Contents of the nearest valid global.json at or above any start dir."""
    seen = set()
    for start in start_dirs:
        current = os.path.abspath(start)
        while current not in seen:
            seen.add(current)
            candidate = os.path.join(current, GLOBAL_JSON)
            if os.path.isfile(candidate):
                try:
                    with open(candidate, "r", encoding="utf-8") as f:
                        content = f.read()
                    if isinstance(json.loads(content).get("sdk"), dict):
                        return content
                except (OSError, ValueError, AttributeError):
                    logger.debug(f"Ignoring unreadable {candidate}")
            parent = os.path.dirname(current)
            if parent == current:
                break
            current = parent
    return None


def build_global_json(sdk_version: str, search_dirs: Optional[Iterable[str]] = None) -> str:
    existing = find_global_json(search_dirs or [os.getcwd()])
    if existing:
        return existing
    return json.dumps({"sdk": {"version": sdk_version, "rollForward": "latestPatch"}}, indent=2) + "\n"


def resolve_app_model(request: BuildRequest) -> AppModel:
    return AppModel.GUI if request.project.is_gui else AppModel.CONSOLE


# =============================================================================
# DIAGNOSTICS
# =============================================================================

def _is_error_line(line: str) -> bool:
    lowered = line.strip().lower()
    return (": error " in lowered or " error cs" in lowered
            or lowered.startswith("error "))


# dotnet build suffixes diagnostics with the project file, e.g. " [/tmp/x/App.csproj]"
PROJECT_SUFFIX_RE = re.compile(r'[ \t]*\[[^\]\n]*' + re.escape(PROJECT_FILE) + r'\][ \t]*$', re.MULTILINE)


def relativize_build_output(text: str, build_dir: str) -> str:
    """Drop the temp build directory and the trailing [App.csproj] tag from compiler output."""
    if not text:
        return ""
    for prefix in sorted({build_dir, os.path.realpath(build_dir)}, key=len, reverse=True):
        text = text.replace(prefix + os.sep, "")
    return PROJECT_SUFFIX_RE.sub("", text)


def extract_primary_error(stderr: str, stdout: str) -> Optional[str]:
    """
    First compiler error line, stderr before stdout; falls back to the
    first non-empty line of either stream.
    """
    for stream in (stderr, stdout):
        for line in (stream or "").splitlines():
            if _is_error_line(line):
                return line.strip()
    for stream in (stderr, stdout):
        for line in (stream or "").splitlines():
            if line.strip():
                return line.strip()
    return None


def find_built_assembly(output_root: str) -> Optional[str]:
    """Shallowest App.dll under output_root (bin/Release/<tfm>/App.dll)."""
    matches: List[str] = []
    for root, _, files in os.walk(output_root):
        if f"{ASSEMBLY_NAME}.dll" in files:
            matches.append(os.path.join(root, f"{ASSEMBLY_NAME}.dll"))
    if not matches:
        return None
    return min(matches, key=lambda p: (p.count(os.sep), p))


# =============================================================================
# COMPILER
# =============================================================================

class Compiler:
    """The CompileCode capability."""

    def __init__(
        self,
        audit: AuditCounters,
        settings: Optional[BuildSettings] = None,
        runner: Optional[ProcessRunner] = None,
        cache: Optional[BuildCache] = None,
    ):
        self.audit = audit
        self.settings = settings if settings is not None else BuildSettings()
        self.runner = runner if runner is not None else ProcessRunner()
        self.cache = cache if cache is not None else BuildCache(
            ttl_seconds=self.settings.compile_dedup_seconds,
            max_entries=self.settings.cache_max_entries,
        )
        self.build_runs = 0

    def compile_payload(self, payload: str) -> BuildResult:
        """Normalize any accepted payload shape, then compile it."""
        return self.compile(normalize_build_request(payload))

    def compile(self, request: BuildRequest) -> BuildResult:
        self.audit.register_compile()
        logger.info(f"CompileCode invoked. Source length: {len(request.code)} chars")

        signature = build_signature(request)
        if not request.code.strip():
            logger.warning("CompileCode called without source code")
            return BuildResult(
                success=False,
                signature=signature,
                diagnostics=("No `code` field or C# fence could be extracted.",),
                primary_error=NO_CODE_ERROR,
            )

        cached = self.cache.get(signature)
        if cached is not None:
            logger.info("CompileCode deduplicated identical request; reusing last result")
            return cached

        result = self._build(request, signature)
        self.cache.put(signature, result)
        return result

    def _build(self, request: BuildRequest, signature: str) -> BuildResult:
        app_model = resolve_app_model(request)

        with tempfile.TemporaryDirectory(prefix="buildswarm_compile_") as tmp_dir:
            with open(os.path.join(tmp_dir, SOURCE_FILE), "w", encoding="utf-8") as f:
                f.write(request.code)
            with open(os.path.join(tmp_dir, PROJECT_FILE), "w", encoding="utf-8") as f:
                f.write(build_project_file(request))
            with open(os.path.join(tmp_dir, GLOBAL_JSON), "w", encoding="utf-8") as f:
                f.write(build_global_json(self.settings.sdk_version))

            self.build_runs += 1
            outcome = self.runner.run(
                [self.settings.compiler] + list(self.settings.build_args),
                cwd=tmp_dir,
                timeout=self.settings.compile_timeout,
            )

            if not outcome.launched or outcome.timed_out:
                logger.warning(f"CompileCode FAILED: {outcome.error_message}")
                return BuildResult(
                    success=False,
                    signature=signature,
                    app_model=app_model,
                    diagnostics=tuple(outcome.error_message.splitlines()),
                    primary_error=outcome.error_message,
                )

            stderr = relativize_build_output(outcome.stderr, tmp_dir)
            stdout = relativize_build_output(outcome.stdout, tmp_dir)
            diagnostics = tuple(
                line for line in (stderr.splitlines() + stdout.splitlines())
                if line.strip()
            )

            if outcome.exit_code != 0:
                primary = extract_primary_error(stderr, stdout)
                logger.info(f"CompileCode FAILED: {primary}")
                return BuildResult(
                    success=False,
                    signature=signature,
                    app_model=app_model,
                    diagnostics=diagnostics,
                    primary_error=primary or f"Build exited with code {outcome.exit_code}",
                )

            built = find_built_assembly(os.path.join(tmp_dir, "bin"))
            if built is None:
                message = f"Build succeeded but {ASSEMBLY_NAME}.dll was not found in output."
                logger.warning(message)
                return BuildResult(
                    success=False,
                    signature=signature,
                    app_model=app_model,
                    diagnostics=diagnostics + (message,),
                    primary_error=message,
                )

            run_dir = self._publish(os.path.dirname(built), request, app_model)

        binary_path = os.path.join(run_dir, f"{ASSEMBLY_NAME}.dll")
        logger.info(f"CompileCode SUCCESS. DLL_PATH: {binary_path}")
        return BuildResult(
            success=True,
            signature=signature,
            app_model=app_model,
            binary_path=binary_path,
            artifact_dir=run_dir,
            diagnostics=diagnostics,
        )

    def _publish(self, build_output: str, request: BuildRequest, app_model: AppModel) -> str:
        """Copy the build output folder into a fresh Run_<UTC timestamp> directory."""
        artifacts_root = os.path.abspath(self.settings.artifacts_root)
        os.makedirs(artifacts_root, exist_ok=True)

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S%f")[:-3]
        run_dir = os.path.join(artifacts_root, f"Run_{stamp}")
        suffix = 1
        while os.path.exists(run_dir):
            run_dir = os.path.join(artifacts_root, f"Run_{stamp}_{suffix}")
            suffix += 1

        shutil.copytree(build_output, run_dir)

        metadata = RunMetadata(
            app_model=app_model,
            target_framework=request.project.target_framework,
            output_type=request.project.output_type,
            use_windows_forms=request.project.use_windows_forms,
            use_wpf=request.project.use_wpf,
        )
        with open(os.path.join(run_dir, RUN_METADATA_FILE), "w", encoding="utf-8") as f:
            json.dump(metadata.to_dict(), f, indent=2)
        return run_dir
