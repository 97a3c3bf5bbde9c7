"""
Build Request Normalizer
========================

Turns whatever a generator (or a compiler role acting on its behalf)
hands over into a canonical BuildRequest.

Accepted shapes, tried in order (first one that yields a request wins):

1. the whole text is a JSON object (``code``/``source``/``csharp`` plus
   optional ``project`` settings and reference lists, possibly nested
   under ``arguments``)
2. a ```json fenced manifest somewhere in the text
3. a fenced source block (```csharp, ```cs or unlabeled)
4. the raw text itself

A manifest that carries no code picks up the source fence from the full
message instead.
"""

import hashlib
import json
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import (
    BuildRequest, PackageReference, ProjectSettings,
    DEFAULT_IMPLICIT_USINGS, DEFAULT_NULLABLE, DEFAULT_OUTPUT_TYPE,
    DEFAULT_SDK, DEFAULT_TARGET_FRAMEWORK,
)

# MSBuild property names: letter or underscore, then letters, digits, '_' or '.'
PROPERTY_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_.]*$')

FENCE_RE = re.compile(r'```[ \t]*([A-Za-z0-9#+_-]*)[^\n]*\n(.*?)```', re.DOTALL)
SOURCE_FENCE_LABELS = {"", "csharp", "cs", "c#"}
MANIFEST_FENCE_LABELS = {"json"}

CODE_KEYS = ("code", "source", "csharp")
ARGUMENT_CODE_KEYS = ("code", "source", "compileInput")

_STRING_SETTINGS = {
    "sdk": "sdk",
    "outputType": "output_type",
    "targetFramework": "target_framework",
    "nullable": "nullable",
    "implicitUsings": "implicit_usings",
    "langVersion": "lang_version",
}

_BOOL_SETTINGS = {
    "useWindowsForms": "use_windows_forms",
    "useWpf": "use_wpf",
    "allowUnsafeBlocks": "allow_unsafe_blocks",
    "enablePreviewFeatures": "enable_preview_features",
    "treatWarningsAsErrors": "treat_warnings_as_errors",
}


# =============================================================================
# JSON ACCESS HELPERS (keys are matched case-insensitively)
# =============================================================================

def _get(obj: Dict[str, Any], *names: str) -> Any:
    lowered = {k.lower(): v for k, v in obj.items()}
    for name in names:
        if name.lower() in lowered:
            return lowered[name.lower()]
    return None


def _read_string(obj: Dict[str, Any], *names: str) -> Optional[str]:
    value = _get(obj, *names)
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _read_bool(obj: Dict[str, Any], name: str) -> Optional[bool]:
    value = _get(obj, name)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _read_object(obj: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    value = _get(obj, name)
    return value if isinstance(value, dict) else None


def _append_unique(target: List[str], value: str):
    value = value.strip()
    if value and value.lower() not in (v.lower() for v in target):
        target.append(value)


# =============================================================================
# SOURCE NORMALIZATION
# =============================================================================

def strip_code_fence(text: str) -> str:
    """Remove one surrounding ``` fence (with optional language label)."""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    first_newline = stripped.find("\n")
    if first_newline == -1:
        return stripped.strip("`").strip()
    body = stripped[first_newline + 1:]
    if body.rstrip().endswith("```"):
        body = body.rstrip()[:-3]
    return body.strip()


def unescape_structural_newlines(code: str) -> str:
    """
    Convert escaped \\n, \\r\\n, \\t and \\\\ into real characters, but only
    outside string, char and verbatim-string literals.

    Used for single-line payloads whose newlines were escaped twice on the
    way in; escapes inside literals are program text and stay as written.
    """
    out = []
    in_string = in_verbatim = in_char = False
    escape = False
    i = 0
    n = len(code)

    while i < n:
        c = code[i]

        if in_verbatim:
            out.append(c)
            if c == '"':
                if i + 1 < n and code[i + 1] == '"':
                    out.append('"')
                    i += 2
                    continue
                in_verbatim = False
            i += 1
            continue

        if in_string or in_char:
            out.append(c)
            if escape:
                escape = False
            elif c == '\\':
                escape = True
            elif in_string and c == '"':
                in_string = False
            elif in_char and c == "'":
                in_char = False
            i += 1
            continue

        # @"...", @$"..." and $@"..." open verbatim literals
        verbatim_prefix = re.match(r'(@\$?|\$@)"', code[i:i + 3])
        if verbatim_prefix:
            out.append(verbatim_prefix.group(0))
            in_verbatim = True
            i += len(verbatim_prefix.group(0))
            continue

        if c == '"':
            in_string = True
            out.append(c)
            i += 1
            continue

        if c == "'":
            in_char = True
            out.append(c)
            i += 1
            continue

        if c == '\\' and i + 1 < n:
            nxt = code[i + 1]
            if code.startswith('\\r\\n', i):
                out.append('\n')
                i += 4
                continue
            if nxt == 'n':
                out.append('\n')
                i += 2
                continue
            if nxt == 't':
                out.append('\t')
                i += 2
                continue
            if nxt == '\\':
                out.append('\\')
                i += 2
                continue

        out.append(c)
        i += 1

    return "".join(out)


def normalize_source(raw: Optional[str]) -> str:
    if not raw or not raw.strip():
        return ""
    code = strip_code_fence(raw.strip())
    code = code.replace("\r\n", "\n")
    if "\n" not in code and "\\n" in code:
        code = unescape_structural_newlines(code)
    return code


def normalize_target_framework(target_framework: str, use_windows_forms: bool, use_wpf: bool) -> str:
    """GUI frameworks need the platform-qualified TFM (net10.0 -> net10.0-windows)."""
    tfm = target_framework.strip() or DEFAULT_TARGET_FRAMEWORK
    if (use_windows_forms or use_wpf) and "-windows" not in tfm.lower():
        tfm = f"{tfm}-windows"
    return tfm


# =============================================================================
# FENCE EXTRACTION
# =============================================================================

def _fences(text: str) -> List[Tuple[str, str]]:
    return [(m.group(1).strip().lower(), m.group(2)) for m in FENCE_RE.finditer(text)]


def extract_json_fence(text: str) -> Optional[str]:
    for label, body in _fences(text):
        if label in MANIFEST_FENCE_LABELS:
            return body.strip()
    return None


def extract_source_fence(text: str) -> Optional[str]:
    """First fenced block labeled as C# (or unlabeled); never a json/yaml fence."""
    for label, body in _fences(text):
        if label in SOURCE_FENCE_LABELS and body.strip():
            return body.strip()
    return None


# =============================================================================
# MANIFEST PARSING
# =============================================================================

class _ManifestReader:
    """Accumulates settings from the layered sections of a JSON manifest."""

    def __init__(self):
        self.settings: Dict[str, Any] = {}
        self.properties: Dict[str, str] = {}
        self.packages: List[PackageReference] = []
        self.framework_refs: List[str] = []
        self.references: List[str] = []

    def apply_settings(self, source: Dict[str, Any]):
        for key, attr in _STRING_SETTINGS.items():
            value = _read_string(source, key)
            if value is not None:
                self.settings[attr] = value.strip()
        for key, attr in _BOOL_SETTINGS.items():
            value = _read_bool(source, key)
            if value is not None:
                self.settings[attr] = value

        extra = _read_object(source, "properties")
        if extra:
            for name, value in extra.items():
                if value is None or isinstance(value, (dict, list)):
                    continue
                text = str(value).lower() if isinstance(value, bool) else str(value)
                if name and PROPERTY_NAME_RE.match(name) and text.strip():
                    self.properties[name] = text.strip()

    def apply_references(self, source: Dict[str, Any]):
        packages = _get(source, "packageReferences")
        if not isinstance(packages, list):
            packages = _get(source, "packages")
        if isinstance(packages, list):
            for entry in packages:
                package = _parse_package(entry)
                if package and package.id.lower() not in (p.id.lower() for p in self.packages):
                    self.packages.append(package)

        frameworks = _get(source, "frameworkReferences")
        if isinstance(frameworks, list):
            for entry in frameworks:
                if isinstance(entry, str):
                    _append_unique(self.framework_refs, entry)

        references = _get(source, "references")
        if not isinstance(references, list):
            references = _get(source, "dllReferences")
        if isinstance(references, list):
            for entry in references:
                if isinstance(entry, str):
                    _append_unique(self.references, entry)

    def apply_section(self, source: Dict[str, Any], with_references: bool = True):
        project = _read_object(source, "project")
        if project:
            self.apply_settings(project)
        self.apply_settings(source)
        if with_references:
            self.apply_references(source)

    def build(self, code: str) -> BuildRequest:
        use_winforms = bool(self.settings.get("use_windows_forms", False))
        use_wpf = bool(self.settings.get("use_wpf", False))
        project = ProjectSettings(
            sdk=self.settings.get("sdk", DEFAULT_SDK),
            output_type=self.settings.get("output_type", DEFAULT_OUTPUT_TYPE),
            target_framework=normalize_target_framework(
                self.settings.get("target_framework", DEFAULT_TARGET_FRAMEWORK),
                use_winforms, use_wpf,
            ),
            nullable=self.settings.get("nullable", DEFAULT_NULLABLE),
            implicit_usings=self.settings.get("implicit_usings", DEFAULT_IMPLICIT_USINGS),
            lang_version=self.settings.get("lang_version"),
            use_windows_forms=use_winforms,
            use_wpf=use_wpf,
            allow_unsafe_blocks=bool(self.settings.get("allow_unsafe_blocks", False)),
            enable_preview_features=bool(self.settings.get("enable_preview_features", False)),
            treat_warnings_as_errors=self.settings.get("treat_warnings_as_errors"),
            properties=dict(self.properties),
        )
        return BuildRequest(
            code=code,
            project=project,
            package_references=tuple(self.packages),
            framework_references=tuple(self.framework_refs),
            references=tuple(self.references),
        )


def _parse_package(entry: Any) -> Optional[PackageReference]:
    if isinstance(entry, str):
        text = entry.strip()
        if not text:
            return None
        if "@" in text:
            package_id, _, version = text.partition("@")
            return PackageReference(package_id.strip(), version.strip() or None) if package_id.strip() else None
        return PackageReference(text)
    if isinstance(entry, dict):
        package_id = _read_string(entry, "id", "include", "name")
        if not package_id:
            return None
        version = _read_string(entry, "version")
        return PackageReference(package_id.strip(), version.strip() if version else None)
    return None


def parse_manifest(text: str, full_message: Optional[str] = None) -> Optional[BuildRequest]:
    """
    Parse a JSON manifest into a BuildRequest.

    Returns None when text is not a JSON object. When the manifest has no
    code, the source fence of full_message (if given) supplies it.
    """
    try:
        root = json.loads(text)
    except (ValueError, TypeError):
        return None
    if not isinstance(root, dict):
        return None

    reader = _ManifestReader()
    code = normalize_source(_read_string(root, *CODE_KEYS))
    reader.apply_section(root)

    arguments = _read_object(root, "arguments")
    if arguments:
        if not code:
            code = normalize_source(_read_string(arguments, *ARGUMENT_CODE_KEYS))
        reader.apply_section(arguments)

    if not code and full_message:
        code = normalize_source(extract_source_fence(full_message))

    return reader.build(code)


# =============================================================================
# PARSER CHAIN
# =============================================================================

def _parse_whole_json(text: str) -> Optional[BuildRequest]:
    return parse_manifest(text, full_message=text)


def _parse_json_fence(text: str) -> Optional[BuildRequest]:
    block = extract_json_fence(text)
    if not block:
        return None
    return parse_manifest(block, full_message=text)


def _parse_source_fence(text: str) -> Optional[BuildRequest]:
    block = extract_source_fence(text)
    if block is None:
        return None
    return BuildRequest(code=normalize_source(block))


def _parse_raw_source(text: str) -> Optional[BuildRequest]:
    return BuildRequest(code=normalize_source(text))


PARSER_CHAIN: Tuple[Callable[[str], Optional[BuildRequest]], ...] = (
    _parse_whole_json,
    _parse_json_fence,
    _parse_source_fence,
    _parse_raw_source,
)


def normalize_build_request(text: Optional[str]) -> BuildRequest:
    """Canonical BuildRequest for any accepted payload shape. Never raises."""
    trimmed = (text or "").strip()
    for parser in PARSER_CHAIN:
        request = parser(trimmed)
        if request is not None:
            return request
    return BuildRequest(code="")


# =============================================================================
# SIGNATURE & MANIFEST SERIALIZATION
# =============================================================================

def build_signature(request: BuildRequest) -> str:
    """
    Deterministic digest of everything that affects the build output.

    Reference collections and properties are sorted (case-insensitively)
    so their order never changes the signature.
    """
    project = request.project
    canonical = {
        "code": request.code,
        "project": {
            "sdk": project.sdk,
            "outputType": project.output_type,
            "targetFramework": project.target_framework,
            "nullable": project.nullable,
            "implicitUsings": project.implicit_usings,
            "langVersion": project.lang_version,
            "useWindowsForms": project.use_windows_forms,
            "useWpf": project.use_wpf,
            "allowUnsafeBlocks": project.allow_unsafe_blocks,
            "enablePreviewFeatures": project.enable_preview_features,
            "treatWarningsAsErrors": project.treat_warnings_as_errors,
            "properties": sorted(project.properties.items(), key=lambda kv: kv[0].lower()),
        },
        "packages": sorted(
            [p.id.lower(), p.version or ""] for p in request.package_references
        ),
        "frameworkReferences": sorted(r.lower() for r in request.framework_references),
        "references": sorted(r.lower() for r in request.references),
    }
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def request_to_manifest(request: BuildRequest) -> str:
    """Serialize a request into a JSON manifest the normalizer reads back."""
    project = request.project
    project_dict: Dict[str, Any] = {
        "sdk": project.sdk,
        "outputType": project.output_type,
        "targetFramework": project.target_framework,
        "nullable": project.nullable,
        "implicitUsings": project.implicit_usings,
        "useWindowsForms": project.use_windows_forms,
        "useWpf": project.use_wpf,
        "allowUnsafeBlocks": project.allow_unsafe_blocks,
        "enablePreviewFeatures": project.enable_preview_features,
    }
    if project.lang_version is not None:
        project_dict["langVersion"] = project.lang_version
    if project.treat_warnings_as_errors is not None:
        project_dict["treatWarningsAsErrors"] = project.treat_warnings_as_errors
    if project.properties:
        project_dict["properties"] = dict(project.properties)

    manifest = {
        "code": request.code,
        "project": project_dict,
        "packageReferences": [
            {"id": p.id, "version": p.version} if p.version else {"id": p.id}
            for p in request.package_references
        ],
        "frameworkReferences": list(request.framework_references),
        "references": list(request.references),
    }
    return json.dumps(manifest, indent=2)
