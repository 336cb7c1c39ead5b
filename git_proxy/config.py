"""Configuration loader for the git proxy.

Loads and validates a single YAML file into an immutable ``ProxyConfig``.
The file location may be overridden with the ``GIT_PROXY_CONFIG``
environment variable. A missing file at the default location yields the
built-in defaults; a missing file that was asked for explicitly is an error.

Example::

    security:
      allow_force_push: false
      protected_branches: [main, master, "release/*"]
      repo_allowlist: ["github.com/my-org"]
      repo_blocklist: ["github.com/my-org/secrets"]
      redact_patterns: ["corp-[0-9a-f]{32}"]
    rate_limit:
      burst: 20
      sustained_per_second: 5.0
    execution:
      timeout_seconds: 300
      max_output_bytes: 10485760
    audit:
      log_path: ~/.local/state/git-proxy/audit.jsonl
    logging:
      level: WARNING
      format: text
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

import yaml

from git_proxy.errors import ConfigError
from git_proxy.patterns import compile_branch_pattern, compile_repo_pattern

CONFIG_ENV_VAR = "GIT_PROXY_CONFIG"
DEFAULT_CONFIG_PATH = "~/.config/git-proxy/config.yaml"

DEFAULT_PROTECTED_BRANCHES = frozenset({"main", "master", "develop"})
DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024

VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
VALID_LOG_FORMATS = frozenset({"json", "text"})

# Maximum allowed length for user-provided regex patterns to mitigate ReDoS.
MAX_REGEX_PATTERN_LENGTH = 1024

# Nested quantifiers such as (a+)+ or (a*){2,} can backtrack catastrophically.
_REDOS_NESTED_QUANTIFIER = re.compile(
    r"[+*]\)?[+*]"
    r"|[+*]\)?\{[0-9,]+\}"
    r"|\{[0-9,]+\}\)?[+*]"
    r"|\{[0-9,]+\}\)?\{[0-9,]+\}"
)


@dataclass(frozen=True)
class RateLimitConfig:
    """Global token bucket parameters."""

    burst: int = 20
    sustained_per_second: float = 5.0

    def __post_init__(self):
        if isinstance(self.burst, bool) or not isinstance(self.burst, int) or self.burst <= 0:
            raise ConfigError(f"Rate limit burst must be a positive integer, got {self.burst!r}")
        if isinstance(self.sustained_per_second, bool) or not isinstance(
            self.sustained_per_second, (int, float)
        ) or self.sustained_per_second <= 0:
            raise ConfigError(
                f"Rate limit sustained_per_second must be positive, got {self.sustained_per_second!r}"
            )


def _compile_redact_pattern(pattern: str) -> re.Pattern:
    if not pattern:
        raise ConfigError("Redaction pattern cannot be empty")
    if len(pattern) > MAX_REGEX_PATTERN_LENGTH:
        raise ConfigError(
            f"Redaction pattern too long ({len(pattern)} chars, "
            f"max {MAX_REGEX_PATTERN_LENGTH}): '{pattern[:50]}...'"
        )
    if _REDOS_NESTED_QUANTIFIER.search(pattern):
        raise ConfigError(
            f"Redaction pattern contains nested quantifiers (potential ReDoS): '{pattern}'"
        )
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ConfigError(f"Invalid redaction pattern '{pattern}': {e}")


def _is_positive_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return value > 0


def _optional_frozenset(values: Optional[Iterable[str]]) -> Optional[FrozenSet[str]]:
    if values is None:
        return None
    return frozenset(values)


@dataclass(frozen=True)
class SecurityConfig:
    """Immutable policy consumed by the pipeline.

    Pattern sets are compiled once here and reused for every request.
    ``repo_allowlist`` of None means "no allowlist"; an empty allowlist
    denies every URL.
    """

    allow_force_push: bool = False
    protected_branches: FrozenSet[str] = DEFAULT_PROTECTED_BRANCHES
    repo_allowlist: Optional[FrozenSet[str]] = None
    repo_blocklist: Optional[FrozenSet[str]] = None
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    audit_log_path: Optional[str] = None
    git_binary: str = "git"
    redact_patterns: Tuple[str, ...] = ()

    _branch_matchers: Tuple[re.Pattern, ...] = field(default=(), init=False, repr=False, compare=False)
    _allow_matchers: Optional[Tuple[re.Pattern, ...]] = field(default=None, init=False, repr=False, compare=False)
    _block_matchers: Tuple[re.Pattern, ...] = field(default=(), init=False, repr=False, compare=False)
    _redact_matchers: Tuple[re.Pattern, ...] = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self):
        if not isinstance(self.allow_force_push, bool):
            raise ConfigError(f"allow_force_push must be a boolean, got {self.allow_force_push!r}")
        if not _is_positive_number(self.timeout_seconds):
            raise ConfigError(f"timeout_seconds must be positive, got {self.timeout_seconds!r}")
        if not isinstance(self.max_output_bytes, int) or not _is_positive_number(self.max_output_bytes):
            raise ConfigError(f"max_output_bytes must be positive, got {self.max_output_bytes!r}")
        if not self.git_binary:
            raise ConfigError("git_binary cannot be empty")

        # Normalize collection types so callers may pass lists.
        object.__setattr__(self, "protected_branches", frozenset(self.protected_branches))
        object.__setattr__(self, "repo_allowlist", _optional_frozenset(self.repo_allowlist))
        object.__setattr__(self, "repo_blocklist", _optional_frozenset(self.repo_blocklist))
        object.__setattr__(self, "redact_patterns", tuple(self.redact_patterns))

        for name in self.protected_branches:
            if not name or not isinstance(name, str):
                raise ConfigError("Protected branch names must be non-empty strings")
        for label, patterns in (("repo_allowlist", self.repo_allowlist), ("repo_blocklist", self.repo_blocklist)):
            for pattern in patterns or ():
                if not pattern or not isinstance(pattern, str):
                    raise ConfigError(f"{label} entries must be non-empty strings")

        object.__setattr__(
            self,
            "_branch_matchers",
            tuple(compile_branch_pattern(b) for b in sorted(self.protected_branches)),
        )
        if self.repo_allowlist is not None:
            object.__setattr__(
                self,
                "_allow_matchers",
                tuple(compile_repo_pattern(p) for p in sorted(self.repo_allowlist)),
            )
        object.__setattr__(
            self,
            "_block_matchers",
            tuple(compile_repo_pattern(p) for p in sorted(self.repo_blocklist or ())),
        )
        object.__setattr__(
            self,
            "_redact_matchers",
            tuple(_compile_redact_pattern(p) for p in self.redact_patterns),
        )

    def is_protected_branch(self, branch: str) -> bool:
        return any(m.match(branch) for m in self._branch_matchers)

    def is_repository_blocked(self, repository: str) -> bool:
        return any(m.match(repository) for m in self._block_matchers)

    def is_repository_allowed(self, repository: str) -> bool:
        """True when no allowlist is configured or ``repository`` matches it."""
        if self._allow_matchers is None:
            return True
        return any(m.match(repository) for m in self._allow_matchers)

    @property
    def compiled_redact_patterns(self) -> Tuple[re.Pattern, ...]:
        return self._redact_matchers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allow_force_push": self.allow_force_push,
            "protected_branches": sorted(self.protected_branches),
            "repo_allowlist": sorted(self.repo_allowlist) if self.repo_allowlist is not None else None,
            "repo_blocklist": sorted(self.repo_blocklist) if self.repo_blocklist is not None else None,
            "rate_limit": {
                "burst": self.rate_limit.burst,
                "sustained_per_second": self.rate_limit.sustained_per_second,
            },
            "timeout_seconds": self.timeout_seconds,
            "max_output_bytes": self.max_output_bytes,
            "audit_log_path": self.audit_log_path,
            "git_binary": self.git_binary,
            "redact_patterns": list(self.redact_patterns),
        }


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "WARNING"
    format: str = "text"

    def __post_init__(self):
        object.__setattr__(self, "level", str(self.level).upper())
        object.__setattr__(self, "format", str(self.format).lower())
        if self.level not in VALID_LOG_LEVELS:
            raise ConfigError(
                f"Invalid log level '{self.level}'. "
                f"Valid levels: {', '.join(sorted(VALID_LOG_LEVELS))}"
            )
        if self.format not in VALID_LOG_FORMATS:
            raise ConfigError(
                f"Invalid log format '{self.format}'. "
                f"Valid formats: {', '.join(sorted(VALID_LOG_FORMATS))}"
            )


@dataclass(frozen=True)
class ProxyConfig:
    security: SecurityConfig = field(default_factory=SecurityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "security": self.security.to_dict(),
            "logging": {"level": self.logging.level, "format": self.logging.format},
        }


def get_config_path() -> str:
    """Return the configuration path from ``GIT_PROXY_CONFIG`` or the default."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return override
    return os.path.expanduser(DEFAULT_CONFIG_PATH)


def _load_yaml_file(file_path: str) -> Dict[str, Any]:
    """Load a YAML file that must contain a mapping.

    Raises:
        ConfigError: If the file is missing, unreadable or not a mapping.
    """
    path = Path(file_path)
    if not path.exists():
        raise ConfigError(
            f"Configuration file not found: {file_path}\n"
            f"Hint: set {CONFIG_ENV_VAR} to point at a different file"
        )

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML file {file_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file {file_path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid configuration file {file_path}: expected YAML dictionary, "
            f"got {type(data).__name__}"
        )
    return data


_SECTION_KEYS: Dict[str, FrozenSet[str]] = {
    "security": frozenset({
        "allow_force_push", "protected_branches", "repo_allowlist",
        "repo_blocklist", "redact_patterns",
    }),
    "rate_limit": frozenset({"burst", "sustained_per_second"}),
    "execution": frozenset({"timeout_seconds", "max_output_bytes", "git_binary"}),
    "audit": frozenset({"log_path"}),
    "logging": frozenset({"level", "format"}),
}


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name)
    if section is None:
        section = {}
    if not isinstance(section, dict):
        raise ConfigError(f"Section '{name}' must be a mapping, got {type(section).__name__}")
    unknown = set(section) - _SECTION_KEYS[name]
    if unknown:
        raise ConfigError(f"Unknown keys in section '{name}': {', '.join(sorted(unknown))}")
    return section


def _string_list(section: Dict[str, Any], key: str) -> Optional[list]:
    value = section.get(key)
    if value is None:
        return None
    if isinstance(value, str) or not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list of strings")
    if not all(isinstance(v, str) for v in value):
        raise ConfigError(f"'{key}' must be a list of strings")
    return value


def parse_config(data: Dict[str, Any]) -> ProxyConfig:
    """Build a ``ProxyConfig`` from an already-parsed mapping."""
    unknown = set(data) - set(_SECTION_KEYS)
    if unknown:
        raise ConfigError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

    security = _section(data, "security")
    rate_limit = _section(data, "rate_limit")
    execution = _section(data, "execution")
    audit = _section(data, "audit")
    log = _section(data, "logging")

    protected = _string_list(security, "protected_branches")
    audit_path = audit.get("log_path")

    security_config = SecurityConfig(
        allow_force_push=security.get("allow_force_push", False),
        protected_branches=(
            frozenset(protected) if protected is not None else DEFAULT_PROTECTED_BRANCHES
        ),
        repo_allowlist=_string_list(security, "repo_allowlist"),
        repo_blocklist=_string_list(security, "repo_blocklist"),
        redact_patterns=tuple(_string_list(security, "redact_patterns") or ()),
        rate_limit=RateLimitConfig(
            burst=rate_limit.get("burst", 20),
            sustained_per_second=rate_limit.get("sustained_per_second", 5.0),
        ),
        timeout_seconds=execution.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS),
        max_output_bytes=execution.get("max_output_bytes", DEFAULT_MAX_OUTPUT_BYTES),
        git_binary=execution.get("git_binary", "git"),
        audit_log_path=os.path.expanduser(audit_path) if audit_path else None,
    )
    logging_config = LoggingConfig(
        level=log.get("level", "WARNING"),
        format=log.get("format", "text"),
    )
    return ProxyConfig(security=security_config, logging=logging_config)


def load_config(path: Optional[str] = None) -> ProxyConfig:
    """Load and validate the proxy configuration.

    Args:
        path: Optional path to the YAML file. If not provided, uses
              ``GIT_PROXY_CONFIG`` or the default location.

    Returns:
        Validated ProxyConfig.

    Raises:
        ConfigError: If the file cannot be read or fails validation.
    """
    explicit = path is not None or bool(os.environ.get(CONFIG_ENV_VAR))
    config_path = path or get_config_path()
    if not explicit and not Path(config_path).exists():
        return ProxyConfig()
    return parse_config(_load_yaml_file(config_path))
