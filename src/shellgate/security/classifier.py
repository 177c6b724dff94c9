"""Risk Classifier - Decides how dangerous a shell command is."""

import posixpath
import re
import shlex
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Iterable, Optional
from urllib.parse import urlsplit

from shellgate.security.rules import RuleSet
from shellgate.telemetry.logger import get_logger

logger = get_logger(__name__)

DEFAULT_WORKSPACE_ROOT = "/app/workspace"


class RiskLevel(IntEnum):
    """Risk level of a command.

    Uses IntEnum so levels compare naturally (CRITICAL > HIGH > ...).
    """

    LOW = 0  # Execute directly
    MEDIUM = 1  # Execute, but leave an audit trail
    HIGH = 2  # Execute only after human approval
    CRITICAL = 3  # Never execute

    @property
    def label(self) -> str:
        """Lowercase name used in audit entries and notifications."""
        return self.name.lower()


class Recommendation(str, Enum):
    """What the gate should do with a classified command."""

    ALLOW = "allow"
    LOG_AND_ALLOW = "log_and_allow"
    APPROVE = "approve"
    BLOCK = "block"


_RECOMMENDATIONS = {
    RiskLevel.LOW: Recommendation.ALLOW,
    RiskLevel.MEDIUM: Recommendation.LOG_AND_ALLOW,
    RiskLevel.HIGH: Recommendation.APPROVE,
    RiskLevel.CRITICAL: Recommendation.BLOCK,
}


@dataclass(frozen=True)
class RiskPattern:
    """A built-in pattern that indicates a certain risk level.

    Attributes:
        pattern: Regular expression searched in the command
        risk_level: Level the pattern forces
        reason: Machine-readable reason reported in verdicts
        network_tools: Network tools the pattern detects. When set, a
            segment is exempt if every target of those tools is loopback.
    """

    pattern: str
    risk_level: RiskLevel
    reason: str
    network_tools: frozenset[str] = frozenset()
    flags: int = 0
    _regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_regex", re.compile(self.pattern, self.flags))

    def matches(self, command: str) -> bool:
        """Check if the pattern matches the command."""
        if not self.network_tools:
            return self._regex.search(command) is not None

        # Judge each sequenced fragment on its own so a loopback call
        # cannot shelter an outbound one in the same command line.
        for segment in _segments(command):
            found = len(self._regex.findall(segment))
            if found and not _targets_loopback(segment, self.network_tools, found):
                return True
        return False


@dataclass(frozen=True)
class RiskVerdict:
    """Result of classifying one command.

    Attributes:
        command: The trimmed command that was classified
        working_dir: Working directory the command would run in
        level: Overall risk level
        reasons: Ordered, de-duplicated reasons for the level
        recommendation: What the gate should do with the command
    """

    command: str
    working_dir: str
    level: RiskLevel
    reasons: tuple[str, ...]
    recommendation: Recommendation

    @property
    def is_blocked(self) -> bool:
        """Whether the command must never run."""
        return self.recommendation is Recommendation.BLOCK

    @property
    def requires_approval(self) -> bool:
        """Whether the command needs a human decision."""
        return self.recommendation is Recommendation.APPROVE

    @property
    def is_allowlisted(self) -> bool:
        return self.reasons == (ALLOWLISTED,)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "command": self.command,
            "working_dir": self.working_dir,
            "level": self.level.label,
            "reasons": list(self.reasons),
            "recommendation": self.recommendation.value,
        }


ALLOWLISTED = "allowlisted"
STANDARD_COMMAND = "standard_command"
EMPTY_COMMAND = "empty_command"
OUTSIDE_WORKSPACE = "file_operation_outside_workspace"

# Shell sequencing operators: &&, ||, ;, |, newline
_SEGMENT_SPLIT = re.compile(r"&&|\|\||[;|\n]")

_LOOPBACK_HOSTS = frozenset(["localhost", "127.0.0.1", "0.0.0.0", "::1"])

_WRITE_FILE_OPS = re.compile(r"\b(?:cp|mv|tee|truncate)\b|>>")

# Flags of an rm invocation that include both recursive and force
_RM_RF = r"\brm\s+(?:-\S+\s+)*-[a-zA-Z]*(?:[rR][a-zA-Z]*f|f[a-zA-Z]*[rR])[a-zA-Z]*"
# Any argument of the same rm invocation, then a recursive flag or a root/home target
_RM_ARGS = r"[^;&|\n]*\s"
_RM_RECURSIVE = r"(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)(?=\s|$|[;&|])"
_RM_ROOT_OR_HOME = r"(?:/|~/?|\$HOME/?|\$\{HOME\}/?)\*?(?=\s|$|[;&|])"
_SHELLS = r"(?:ba|z|da|k)?sh"


@dataclass(frozen=True)
class _ToolOptions:
    """Enough of a network tool's option syntax to find its targets.

    Attributes:
        values: Options that consume an argument (short and long names)
        endpoints: Options whose argument is itself a host or URL
        unsafe: Options that hide or reroute targets (config files,
            resolve overrides, exec); a segment using one is never exempt
        ports: Bare numbers are ports rather than hosts
    """

    values: frozenset[str]
    endpoints: frozenset[str] = frozenset()
    unsafe: frozenset[str] = frozenset()
    ports: bool = False


_CURL_OPTIONS = _ToolOptions(
    values=frozenset(
        "A b c C d D e E F H m o P Q r t T u U w x X y Y z".split()
        + [
            "data", "data-ascii", "data-binary", "data-raw", "data-urlencode",
            "form", "form-string", "header", "proxy-header", "json",
            "output", "output-dir", "dump-header", "write-out",
            "user", "proxy-user", "user-agent", "referer", "oauth2-bearer",
            "cookie", "cookie-jar", "request", "range", "continue-at",
            "max-time", "connect-timeout", "retry", "retry-delay", "retry-max-time",
            "limit-rate", "max-filesize", "speed-limit", "speed-time",
            "cacert", "capath", "cert", "cert-type", "key", "key-type", "pass",
            "upload-file", "time-cond", "interface", "local-port", "ftp-port",
            "quote", "url", "proxy", "preproxy",
        ]
    ),
    endpoints=frozenset(["x", "url", "proxy", "preproxy"]),
    unsafe=frozenset(["K", "config", "resolve", "connect-to", "variable"]),
)

_WGET_OPTIONS = _ToolOptions(
    values=frozenset(
        "O o a U P t T w Q B l D".split()
        + [
            "output-document", "output-file", "append-output", "directory-prefix",
            "user-agent", "referer", "header", "method",
            "post-data", "post-file", "body-data", "body-file",
            "user", "password", "http-user", "http-password",
            "load-cookies", "save-cookies", "tries", "timeout", "wait",
            "quota", "level", "domains", "limit-rate", "bind-address",
            "ca-certificate", "certificate", "private-key",
        ]
    ),
    unsafe=frozenset(["i", "input-file", "e", "execute", "config"]),
)

_NETCAT_OPTIONS = _ToolOptions(
    values=frozenset(
        "p s w i q X x".split()
        + ["source", "source-port", "wait", "idle-timeout", "proxy", "proxy-type"]
    ),
    endpoints=frozenset(["x", "proxy"]),
    unsafe=frozenset(["e", "c", "exec", "sh-exec", "lua-exec"]),
    ports=True,
)

_NETWORK_TOOLS = {
    "curl": _CURL_OPTIONS,
    "wget": _WGET_OPTIONS,
    "nc": _NETCAT_OPTIONS,
    "ncat": _NETCAT_OPTIONS,
    "netcat": _NETCAT_OPTIONS,
}
_NETCAT_NAMES = frozenset(["nc", "ncat", "netcat"])

# Shell redirections: the bare operator consumes the next token
_REDIRECT = re.compile(r"\d*(?:&>>?|>>?&?|<<?<?&?)")
_PROXY_ASSIGNMENT = re.compile(r"\w*_proxy=", re.IGNORECASE)
_PORT = re.compile(r"\d+(?:-\d+)?")


def _segments(command: str) -> list[str]:
    return [part.strip() for part in _SEGMENT_SPLIT.split(command) if part.strip()]


def _tool_name(token: str) -> Optional[str]:
    name = posixpath.basename(token)
    if name in _NETWORK_TOOLS and "://" not in token:
        return name
    return None


def _targets_loopback(segment: str, tools: frozenset[str], expected: int) -> bool:
    """Whether every invocation of ``tools`` in the segment stays local.

    ``expected`` is how many invocations the pattern saw. If the tokens
    show fewer (quoting, substitution), the segment is not exempt.
    """
    try:
        tokens = shlex.split(segment)
    except ValueError:
        return False
    if any(_PROXY_ASSIGNMENT.match(token) for token in tokens):
        return False

    starts = [i for i, token in enumerate(tokens) if _tool_name(token) in tools]
    if len(starts) < expected:
        return False

    ends = starts[1:] + [len(tokens)]
    for start, end in zip(starts, ends):
        options = _NETWORK_TOOLS[posixpath.basename(tokens[start])]
        if not _invocation_is_loopback(tokens[start + 1 : end], options):
            return False
    return True


def _invocation_is_loopback(args: list[str], options: _ToolOptions) -> bool:
    targets: list[str] = []
    tokens = iter(args)
    only_targets = False

    for token in tokens:
        if token == "&":
            continue
        if _REDIRECT.match(token):
            if _REDIRECT.fullmatch(token):
                next(tokens, None)
            continue

        if only_targets or token == "-" or not token.startswith("-"):
            targets.append(token)
        elif token == "--":
            only_targets = True
        elif token.startswith("--"):
            name, has_value, value = token[2:].partition("=")
            if name in options.unsafe:
                return False
            if name in options.values and not has_value:
                value = next(tokens, "")
            if name in options.endpoints:
                targets.append(value)
        else:
            # Clustered short flags; the first one taking a value ends the cluster
            for pos, flag in enumerate(token[1:], start=2):
                if flag in options.unsafe:
                    return False
                if flag in options.values:
                    value = token[pos:] or next(tokens, "")
                    if flag in options.endpoints:
                        targets.append(value)
                    break

    return bool(targets) and all(_is_loopback(target, options.ports) for target in targets)


def _is_loopback(target: str, ports: bool) -> bool:
    if ports and _PORT.fullmatch(target):
        return True
    if target.lower() in _LOOPBACK_HOSTS:
        return True
    try:
        host = urlsplit(target if "://" in target else "//" + target).hostname
    except ValueError:
        return False
    return host in _LOOPBACK_HOSTS


def _dedupe(reasons: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(reasons))


class RiskClassifier:
    """Classifies commands against built-in patterns and a user RuleSet.

    Evaluation order:

    1. empty command -> LOW
    2. user blocklist -> CRITICAL (never downgraded)
    3. built-in critical patterns -> CRITICAL (never downgraded)
    4. user command allowlist -> LOW/allowlisted
    5. built-in high patterns -> HIGH
    6. built-in medium patterns and the workspace boundary -> MEDIUM,
       unless the command or the working directory is allowlisted
    7. otherwise LOW/standard_command

    The classifier is pure: no I/O, and the same input always yields the
    same verdict for an unchanged RuleSet.

    Example:
        classifier = RiskClassifier(RuleSet.from_dict(rules))
        verdict = classifier.classify("rm -rf ./build", "/app/workspace")
        print(verdict.level)  # RiskLevel.HIGH
    """

    CRITICAL_PATTERNS = [
        RiskPattern(
            rf"\brm(?={_RM_ARGS}{_RM_RECURSIVE})(?={_RM_ARGS}{_RM_ROOT_OR_HOME})",
            RiskLevel.CRITICAL,
            "destructive_root_delete",
        ),
        RiskPattern(
            r":\s*\(\s*\)\s*\{.*:\s*\|\s*:.*&.*\}\s*;\s*:",
            RiskLevel.CRITICAL,
            "fork_bomb",
        ),
        RiskPattern(
            r"\b(\w+)\s*\(\s*\)\s*\{\s*\1\s*\|\s*\1\s*&\s*\}\s*;\s*\1\b",
            RiskLevel.CRITICAL,
            "fork_bomb",
        ),
        RiskPattern(
            r"\bdd\s+.*\bof=/dev/(?!null\b|zero\b|stdout\b|stderr\b)",
            RiskLevel.CRITICAL,
            "disk_overwrite",
        ),
        RiskPattern(
            r">\s*/dev/(?:sd|hd|vd|xvd|nvme|mmcblk)\w*",
            RiskLevel.CRITICAL,
            "disk_overwrite",
        ),
        RiskPattern(
            r"\bmkfs[.\s]",
            RiskLevel.CRITICAL,
            "filesystem_format",
        ),
        RiskPattern(
            r"\bformat\s+[A-Z]:",
            RiskLevel.CRITICAL,
            "disk_format",
        ),
        RiskPattern(
            r"(?<!\|)\|(?!\|)\s*(?:sudo\s+)?" + _SHELLS + r"\b",
            RiskLevel.CRITICAL,
            "pipe_to_shell",
        ),
        RiskPattern(
            r"\bbase64\s+(?:-\S+\s+)*(?:-d|-D|--decode)\b.*\|\s*(?:sudo\s+)?" + _SHELLS + r"\b",
            RiskLevel.CRITICAL,
            "encoded_shell_execution",
        ),
        RiskPattern(
            r"\beval\s+.*(?:\$\(|`)",
            RiskLevel.CRITICAL,
            "eval_command_substitution",
        ),
    ]

    HIGH_PATTERNS = [
        # Destructive (non-root targets)
        RiskPattern(_RM_RF + r"\b", RiskLevel.HIGH, "destructive_command"),
        RiskPattern(
            r"\brm\s+(?:-\S+\s+)*(?:-[rR]|--recursive)(?=\s|$)",
            RiskLevel.HIGH,
            "recursive_delete",
        ),
        # Network fetch/transfer (loopback exempt)
        RiskPattern(
            r"\bcurl\s+", RiskLevel.HIGH, "network_request", network_tools=frozenset(["curl"])
        ),
        RiskPattern(
            r"\bwget\s+", RiskLevel.HIGH, "network_request", network_tools=frozenset(["wget"])
        ),
        RiskPattern(
            r"\b(?:nc|ncat|netcat)\s+", RiskLevel.HIGH, "netcat", network_tools=_NETCAT_NAMES
        ),
        RiskPattern(r"\bssh\s+", RiskLevel.HIGH, "ssh_connection"),
        RiskPattern(r"\bscp\s+", RiskLevel.HIGH, "scp_transfer"),
        RiskPattern(r"\brsync\s+", RiskLevel.HIGH, "rsync_transfer"),
        # Credential access
        RiskPattern(r"[~/]\.ssh/id_", RiskLevel.HIGH, "ssh_key_access"),
        RiskPattern(r"[~/]\.aws/", RiskLevel.HIGH, "aws_credential_access"),
        RiskPattern(
            r"[~/]\.(?:azure|config/gcloud|kube)/",
            RiskLevel.HIGH,
            "cloud_credential_access",
        ),
        RiskPattern(
            r"[~/]\.[\w.-]+/credentials\b",
            RiskLevel.HIGH,
            "credential_store_access",
        ),
        RiskPattern(r"\.env\b", RiskLevel.HIGH, "env_file_access"),
        RiskPattern(r"/etc/shadow\b", RiskLevel.HIGH, "shadow_file_access"),
        RiskPattern(r"/etc/passwd\b", RiskLevel.HIGH, "passwd_file_access"),
        # Privilege and permission changes
        RiskPattern(r"\b(?:sudo|doas)\s+", RiskLevel.HIGH, "sudo_usage"),
        RiskPattern(r"(?:^|[;&|(]\s*)su(?:\s|$)", RiskLevel.HIGH, "su_usage"),
        RiskPattern(
            r"\bchmod\s+(?:-\S+\s+)*(?:0?777|[ao]\+w)\b",
            RiskLevel.HIGH,
            "world_writable_permissions",
        ),
        RiskPattern(r"\b(?:chown|chgrp)\s+", RiskLevel.HIGH, "ownership_change"),
        # Decoding is a common way to smuggle a payload past the patterns above
        RiskPattern(
            r"\bbase64\s+(?:-\S+\s+)*(?:-d|-D|--decode)\b",
            RiskLevel.HIGH,
            "base64_decode",
        ),
    ]

    MEDIUM_PATTERNS = [
        RiskPattern(r"\bnpm\s+(?:install|i|add)\b", RiskLevel.MEDIUM, "package_install"),
        RiskPattern(r"\bpip3?\s+install\b", RiskLevel.MEDIUM, "package_install"),
        RiskPattern(r"\byarn\s+add\b", RiskLevel.MEDIUM, "package_install"),
        RiskPattern(
            r"\b(?:apt|apt-get|yum|dnf|brew|gem|cargo)\s+install\b",
            RiskLevel.MEDIUM,
            "package_install",
        ),
        RiskPattern(r"\bgit\s+push\b", RiskLevel.MEDIUM, "git_push"),
        RiskPattern(r"\bgit\s+commit\b", RiskLevel.MEDIUM, "git_commit"),
        RiskPattern(r"\bspawn\b", RiskLevel.MEDIUM, "process_spawn"),
        RiskPattern(r"\bfork\b", RiskLevel.MEDIUM, "process_fork"),
    ]

    def __init__(
        self,
        rules: Optional[RuleSet] = None,
        workspace_root: Optional[str] = DEFAULT_WORKSPACE_ROOT,
    ) -> None:
        """Initialize the risk classifier.

        Args:
            rules: User allowlist/blocklist rules (empty if omitted)
            workspace_root: Directory outside of which file writes are
                flagged. None disables the boundary check.
        """
        self.rules = rules or RuleSet()
        self.workspace_root = (
            posixpath.normpath(workspace_root) if workspace_root else None
        )

        logger.info(
            "RiskClassifier initialized",
            critical_patterns=len(self.CRITICAL_PATTERNS),
            high_patterns=len(self.HIGH_PATTERNS),
            medium_patterns=len(self.MEDIUM_PATTERNS),
            workspace_root=self.workspace_root,
        )

    def classify(self, command: str, working_dir: str = "") -> RiskVerdict:
        """Classify the risk level of a command.

        Args:
            command: Shell command to analyze (classified as one string,
                including any &&, ; or | sequencing)
            working_dir: Directory the command would run in

        Returns:
            RiskVerdict for the command
        """
        command = command.strip()
        working_dir = working_dir or ""

        verdict = self._evaluate(command, working_dir)

        logger.debug(
            "Command classified",
            command=command[:50],
            level=verdict.level.label,
            reasons=list(verdict.reasons),
        )
        return verdict

    def _evaluate(self, command: str, working_dir: str) -> RiskVerdict:
        if not command:
            return self._verdict(command, working_dir, RiskLevel.LOW, [EMPTY_COMMAND])

        blocked = self.rules.match_blocked_command(command)
        if blocked is not None:
            return self._verdict(
                command, working_dir, RiskLevel.CRITICAL, [f"blocklisted: {blocked.pattern}"]
            )

        reasons = self._matching_reasons(self.CRITICAL_PATTERNS, command)
        if reasons:
            return self._verdict(command, working_dir, RiskLevel.CRITICAL, reasons)

        # Allowlisted commands may skip approval, but never a critical block
        if self.rules.match_allowed_command(command) is not None:
            return self._allowlisted(command, working_dir)

        reasons = self._matching_reasons(self.HIGH_PATTERNS, command)
        if reasons:
            return self._verdict(command, working_dir, RiskLevel.HIGH, reasons)

        reasons = self._matching_reasons(self.MEDIUM_PATTERNS, command)
        if self._outside_workspace(working_dir) and _WRITE_FILE_OPS.search(command):
            reasons.append(OUTSIDE_WORKSPACE)

        if reasons:
            # A path allowlist can only downgrade MEDIUM, never HIGH
            if self.rules.match_allowed_path(working_dir) is not None:
                return self._allowlisted(command, working_dir)
            return self._verdict(command, working_dir, RiskLevel.MEDIUM, reasons)

        return self._verdict(command, working_dir, RiskLevel.LOW, [STANDARD_COMMAND])

    @staticmethod
    def _matching_reasons(patterns: list[RiskPattern], command: str) -> list[str]:
        return [pattern.reason for pattern in patterns if pattern.matches(command)]

    def _outside_workspace(self, working_dir: str) -> bool:
        if not working_dir or not self.workspace_root:
            return False

        root = self.workspace_root
        path = posixpath.normpath(working_dir)
        if root == "/" or path == root:
            return False
        return not path.startswith(root + "/")

    def _allowlisted(self, command: str, working_dir: str) -> RiskVerdict:
        return self._verdict(command, working_dir, RiskLevel.LOW, [ALLOWLISTED])

    @staticmethod
    def _verdict(
        command: str,
        working_dir: str,
        level: RiskLevel,
        reasons: Iterable[str],
    ) -> RiskVerdict:
        return RiskVerdict(
            command=command,
            working_dir=working_dir,
            level=level,
            reasons=_dedupe(reasons),
            recommendation=_RECOMMENDATIONS[level],
        )

    def is_safe(self, command: str, working_dir: str = "") -> bool:
        """Quick check if a command can run without approval or audit."""
        return self.classify(command, working_dir).level is RiskLevel.LOW
