"""
Detectors module for applying pattern rules to a source tree.
This module loads rules from rules.json and runs the line-based
secret, insecure-function, SAST and container passes.

IMPORTANT: This module is input-source agnostic. It does NOT know
whether the tree came from a local checkout, a clone or an archive.
"""

import os
import re
import json
from typing import Dict, List, Any, Iterable, Optional, Pattern
from pathlib import Path
from dataclasses import dataclass, asdict

from .utils import SourceFile, has_allowed_extension, read_file_content, logger
from .severity import severity_rank


# Path to rules file
RULES_FILE = Path(__file__).parent.parent / 'rules' / 'rules.json'

DETECTOR_NAMES = ('secrets', 'insecure', 'sast', 'container')

SAST_EXTENSIONS = (
    '.js', '.jsx', '.ts', '.tsx', '.mjs', '.cjs',
    '.py', '.php', '.java', '.rb', '.go', '.cs',
)

COMMENT_PREFIXES = ('//', '#', '/*', '*', '<!--')

DEFAULT_SAST_CAPS = {'critical': 20, 'high': 30, 'medium': 40, 'low': 10}
DEFAULT_FINDING_CAP = 50

PREVIEW_LENGTH = 12
CODE_PREVIEW_LENGTH = 80


@dataclass(frozen=True)
class SecretFinding:
    """A hardcoded credential. Only a short prefix of the match is kept."""
    file: str
    line: int
    type: str
    severity: str
    preview: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class InsecureFunctionFinding:
    """Use of a dangerous API."""
    file: str
    line: int
    function: str
    risk: str
    suggestion: str
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SASTFinding:
    """A lexical match for a vulnerability class."""
    file: str
    line: int
    type: str
    severity: str
    code: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ContainerFinding:
    """A weakness in the container build file."""
    file: str
    line: int
    issue: str
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CompiledRule:
    """A catalog entry with its regex compiled."""
    id: str
    detector: str
    name: str
    category: str
    severity: str
    regex: Pattern
    description: str
    remediation: str


class RulesLoader:
    """Handles loading and caching of the pattern catalog."""

    _instance = None
    _rules = None
    _compiled = None

    def __new__(cls):
        """Singleton pattern for rules loader."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def load_rules(self, rules_path: Optional[str] = None) -> Dict[str, Any]:
        if self._rules is not None and rules_path is None:
            return self._rules

        path = Path(rules_path) if rules_path else RULES_FILE

        try:
            with open(path, 'r', encoding='utf-8') as f:
                rules = json.load(f)

            logger.info(f"Loaded {len(rules.get('rules', []))} rules from {path}")

        except FileNotFoundError:
            logger.warning(f"Rules file not found: {path}")
            rules = self._get_default_rules()

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in rules file: {e}")
            rules = self._get_default_rules()

        type(self)._rules = rules
        type(self)._compiled = None
        return rules

    def _get_default_rules(self) -> Dict[str, Any]:
        """Return an empty catalog if rules.json is not available."""
        return {
            "version": "0.0.0",
            "rules": []
        }

    def _compile(self) -> Dict[str, List[CompiledRule]]:
        compiled = {name: [] for name in DETECTOR_NAMES}

        for rule in self.load_rules().get("rules", []):
            detector = rule.get("detector")
            if detector not in compiled:
                logger.warning(f"Rule {rule.get('id')} targets unknown detector {detector!r}")
                continue

            flags = 0
            if "ignorecase" in rule.get("flags", []):
                flags |= re.IGNORECASE

            try:
                regex = re.compile(rule["pattern"], flags)
            except (KeyError, re.error) as e:
                logger.warning(f"Invalid regex pattern in rule {rule.get('id')}: {e}")
                continue

            compiled[detector].append(CompiledRule(
                id=rule.get("id", "unknown"),
                detector=detector,
                name=rule.get("name", rule.get("id", "unknown")),
                category=rule.get("category", "general"),
                severity=rule.get("severity", "low").lower(),
                regex=regex,
                description=rule.get("description", ""),
                remediation=rule.get("remediation", "")
            ))

        return compiled

    def get_rules_for_detector(self, detector: str) -> List[CompiledRule]:
        """Get the compiled rules of one detector, in catalog order."""
        if self._compiled is None:
            type(self)._compiled = self._compile()
        return list(self._compiled.get(detector, []))

    def summary(self) -> Dict[str, Any]:
        """Rule counts by detector and category."""
        result = {"version": self.load_rules().get("version"), "detectors": {}}
        for detector in DETECTOR_NAMES:
            categories: Dict[str, int] = {}
            for rule in self.get_rules_for_detector(detector):
                categories[rule.category] = categories.get(rule.category, 0) + 1
            result["detectors"][detector] = {
                "total": sum(categories.values()),
                "categories": categories,
            }
        return result


class BaseDetector:
    """
    Common shape of a detection pass.

    Subclasses implement `_detect`. `run` never raises: a failing pass is
    logged and contributes no findings.
    """

    name = "base"

    def __init__(self, rules: Optional[List[CompiledRule]] = None):
        self.rules = rules if rules is not None else RulesLoader().get_rules_for_detector(self.name)

    def run(self, root: str, files: Iterable[SourceFile]) -> List[Any]:
        try:
            findings = self._detect(root, files)
        except Exception:
            logger.exception(f"{self.name} detector failed; continuing without its findings")
            return []
        logger.debug(f"{self.name} detector produced {len(findings)} findings")
        return findings

    def _detect(self, root: str, files: Iterable[SourceFile]) -> List[Any]:
        raise NotImplementedError


class SecretDetector(BaseDetector):
    """Finds credentials committed to source."""

    name = "secrets"

    def __init__(self, rules: Optional[List[CompiledRule]] = None, max_findings: int = DEFAULT_FINDING_CAP):
        super().__init__(rules)
        self.max_findings = max_findings

    def _detect(self, root: str, files: Iterable[SourceFile]) -> List[SecretFinding]:
        findings = []

        for source in files:
            for line_number, line in enumerate(source.lines, start=1):
                for rule in self.rules:
                    for match in rule.regex.finditer(line):
                        findings.append(SecretFinding(
                            file=source.relative_path,
                            line=line_number,
                            type=rule.category,
                            severity=rule.severity,
                            preview=match.group(0)[:PREVIEW_LENGTH] + '...'
                        ))
                        if len(findings) >= self.max_findings:
                            return findings

        return findings


class InsecureFunctionDetector(BaseDetector):
    """Flags dangerous API usage such as eval() or innerHTML."""

    name = "insecure"

    def __init__(self, rules: Optional[List[CompiledRule]] = None, max_findings: int = DEFAULT_FINDING_CAP):
        super().__init__(rules)
        self.max_findings = max_findings

    def _detect(self, root: str, files: Iterable[SourceFile]) -> List[InsecureFunctionFinding]:
        findings = []

        for source in files:
            for line_number, line in enumerate(source.lines, start=1):
                for rule in self.rules:
                    if not rule.regex.search(line):
                        continue

                    findings.append(InsecureFunctionFinding(
                        file=source.relative_path,
                        line=line_number,
                        function=rule.name,
                        risk=rule.description,
                        suggestion=rule.remediation,
                        severity=rule.severity
                    ))
                    if len(findings) >= self.max_findings:
                        return findings

        return findings


class SASTDetector(BaseDetector):
    """
    Line-level static analysis across the vulnerability categories.

    One finding per (file, line, category); the first matching rule in
    catalog order wins. Comment lines are skipped. Output is ordered by
    severity then file path and capped per severity.
    """

    name = "sast"

    def __init__(
        self,
        rules: Optional[List[CompiledRule]] = None,
        caps: Optional[Dict[str, int]] = None,
        extensions: Iterable[str] = SAST_EXTENSIONS
    ):
        super().__init__(rules)
        self.caps = dict(DEFAULT_SAST_CAPS if caps is None else caps)
        self.extensions = tuple(extensions)

    @staticmethod
    def is_comment(line: str) -> bool:
        return line.strip().startswith(COMMENT_PREFIXES)

    def _detect(self, root: str, files: Iterable[SourceFile]) -> List[SASTFinding]:
        findings = []
        seen = set()

        for source in files:
            if not has_allowed_extension(source.relative_path, self.extensions):
                continue

            for line_number, line in enumerate(source.lines, start=1):
                if self.is_comment(line):
                    continue

                for rule in self.rules:
                    key = (source.relative_path, line_number, rule.category)
                    if key in seen or not rule.regex.search(line):
                        continue

                    seen.add(key)
                    findings.append(SASTFinding(
                        file=source.relative_path,
                        line=line_number,
                        type=rule.category,
                        severity=rule.severity,
                        code=line.strip()[:CODE_PREVIEW_LENGTH],
                        description=rule.description
                    ))

        findings.sort(key=lambda f: (severity_rank(f.severity), f.file))
        return self._apply_caps(findings)

    def _apply_caps(self, findings: List[SASTFinding]) -> List[SASTFinding]:
        kept = []
        counts: Dict[str, int] = {}
        for finding in findings:
            cap = self.caps.get(finding.severity)
            taken = counts.get(finding.severity, 0)
            if cap is not None and taken >= cap:
                continue
            counts[finding.severity] = taken + 1
            kept.append(finding)
        return kept


class ContainerDetector(BaseDetector):
    """Audits the Dockerfile at the root of the tree."""

    name = "container"
    filename = "Dockerfile"

    def _detect(self, root: str, files: Iterable[SourceFile]) -> List[ContainerFinding]:
        dockerfile = os.path.join(root, self.filename)
        if not os.path.isfile(dockerfile):
            return []

        content = read_file_content(dockerfile)
        if content is None:
            return []

        findings = []
        for line_number, line in enumerate(content.splitlines(), start=1):
            for rule in self.rules:
                if rule.regex.search(line):
                    findings.append(ContainerFinding(
                        file=self.filename,
                        line=line_number,
                        issue=rule.description,
                        severity=rule.severity
                    ))
        return findings
