"""
Rule conflict detector

Static analysis over the MCC, vendor and keyword tables:
- same key mapping to different categories
- overlapping vendor patterns and priority inversions
- keyword overlap across categories, contradictory exclude lists
- regex patterns that fail to compile or risk catastrophic backtracking

Run before shipping rule table changes (GET /api/v1/rules/validation).
"""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ledgerlens.domain.categorization.rules.keywords import KEYWORD_RULES, KeywordRule
from ledgerlens.domain.categorization.rules.mcc import MCC_MAPPINGS, MCCMapping, MCCStrength
from ledgerlens.domain.categorization.rules.vendors import (
    VENDOR_PATTERNS,
    VendorMatchType,
    VendorPattern,
    normalize_vendor_name,
)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_ORDER = {Severity.CRITICAL: 0, Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}


class RuleRef(BaseModel):
    id: str
    pattern: str
    category_slug: str
    priority: Optional[int] = None


class RuleConflict(BaseModel):
    conflict_type: str = Field(..., description="overlap | priority_inversion | ambiguous")
    severity: Severity
    rule_type: str
    rule1: RuleRef
    rule2: Optional[RuleRef] = None
    reason: str
    examples: List[str] = Field(default_factory=list)
    recommendation: str


class RegexSafetyIssue(BaseModel):
    rule_type: str
    rule_id: str
    pattern: str
    issue: str = Field(..., description="invalid_regex | unsafe_regex")
    severity: Severity
    reason: str


class ValidationSummary(BaseModel):
    total_rules: int
    conflict_count: int
    critical_conflicts: int
    high_conflicts: int
    regex_issues: int


class ValidationReport(BaseModel):
    timestamp: datetime
    summary: ValidationSummary
    conflicts: List[RuleConflict]
    regex_issues: List[RegexSafetyIssue]
    resolution_order: List[str]


RESOLUTION_ORDER = [
    "MCC: exact codes before family codes",
    "VENDOR: exact > prefix/suffix/contains > regex, then priority",
    "EMBEDDING: nearest learned vendor above the similarity threshold",
    "KEYWORD: highest weight x matched keywords, table order breaks ties",
    "LLM: generative fallback when Pass-1 stays below the floor",
]

# Quantified group that itself contains a quantifier, e.g. (a+)+ or (\w*)*
_NESTED_QUANTIFIER = re.compile(r"\((?:[^()\\]|\\.)*[+*](?:[^()\\]|\\.)*\)[+*{]")
# Quantified alternation whose branches can overlap, e.g. (a|a)+
_QUANTIFIED_ALTERNATION = re.compile(r"\((?:[^()\\]|\\.)*\|(?:[^()\\]|\\.)*\)[+*]")


def check_regex_safety(pattern: str) -> Optional[str]:
    """
    Return an issue code for a risky pattern, or None when it looks safe.

    Heuristic: flags nested quantifiers and quantified alternations, the two
    shapes behind most catastrophic backtracking.
    """
    try:
        re.compile(pattern)
    except re.error:
        return "invalid_regex"
    if _NESTED_QUANTIFIER.search(pattern) or _QUANTIFIED_ALTERNATION.search(pattern):
        return "unsafe_regex"
    return None


def validate_mcc_rules(mappings: Dict[str, MCCMapping] = None) -> List[RuleConflict]:
    mappings = mappings if mappings is not None else MCC_MAPPINGS
    conflicts = []
    for code, mapping in mappings.items():
        if mapping.strength == MCCStrength.EXACT and mapping.base_confidence < 0.7:
            conflicts.append(RuleConflict(
                conflict_type="ambiguous",
                severity=Severity.MEDIUM,
                rule_type="mcc",
                rule1=RuleRef(id=f"mcc:{code}", pattern=code, category_slug=mapping.category_slug, priority=100),
                reason=f"MCC marked as 'exact' but has low confidence {mapping.base_confidence}",
                recommendation='Either lower strength to "family" or increase base confidence',
            ))
    return conflicts


def _vendor_ref(index: int, pattern: VendorPattern) -> RuleRef:
    return RuleRef(
        id=f"vendor:{index}",
        pattern=pattern.pattern,
        category_slug=pattern.category_slug,
        priority=pattern.priority,
    )


def validate_vendor_patterns(patterns: List[VendorPattern] = None):
    """Returns (conflicts, regex_issues) for the vendor table."""
    patterns = patterns if patterns is not None else VENDOR_PATTERNS
    conflicts: List[RuleConflict] = []
    regex_issues: List[RegexSafetyIssue] = []

    for i, p1 in enumerate(patterns):
        if p1.match_type == VendorMatchType.REGEX:
            issue = check_regex_safety(p1.pattern)
            if issue:
                regex_issues.append(RegexSafetyIssue(
                    rule_type="vendor",
                    rule_id=f"vendor:{i}",
                    pattern=p1.pattern,
                    issue=issue,
                    severity=Severity.CRITICAL,
                    reason=(
                        "Pattern does not compile" if issue == "invalid_regex"
                        else "Pattern has catastrophic backtracking risk"
                    ),
                ))

        for j in range(i + 1, len(patterns)):
            p2 = patterns[j]
            if p1.match_type == VendorMatchType.REGEX or p2.match_type == VendorMatchType.REGEX:
                continue
            n1, n2 = normalize_vendor_name(p1.pattern), normalize_vendor_name(p2.pattern)

            if p1.category_slug != p2.category_slug:
                if n1 == n2:
                    conflicts.append(RuleConflict(
                        conflict_type="overlap",
                        severity=Severity.CRITICAL,
                        rule_type="vendor",
                        rule1=_vendor_ref(i, p1),
                        rule2=_vendor_ref(j, p2),
                        reason="Same vendor pattern maps to different categories",
                        examples=[f'"{p1.pattern}" -> {p1.category_slug} AND {p2.category_slug}'],
                        recommendation="Remove duplicate or use more specific pattern",
                    ))
                elif (
                    p1.match_type == VendorMatchType.CONTAINS
                    and p2.match_type == VendorMatchType.CONTAINS
                    and (f" {n2} " in f" {n1} " or f" {n1} " in f" {n2} ")
                ):
                    longer, shorter = (n1, n2) if len(n1) >= len(n2) else (n2, n1)
                    conflicts.append(RuleConflict(
                        conflict_type="overlap",
                        severity=Severity.HIGH,
                        rule_type="vendor",
                        rule1=_vendor_ref(i, p1),
                        rule2=_vendor_ref(j, p2),
                        reason="Vendor patterns overlap - priority-based resolution needed",
                        examples=[f'"{longer}" contains "{shorter}"'],
                        recommendation="Ensure priority is set correctly to resolve overlap deterministically",
                    ))
            elif p1.priority != p2.priority:
                high, low = (p1, p2) if p1.priority > p2.priority else (p2, p1)
                if high.confidence < low.confidence:
                    conflicts.append(RuleConflict(
                        conflict_type="priority_inversion",
                        severity=Severity.MEDIUM,
                        rule_type="vendor",
                        rule1=_vendor_ref(patterns.index(high), high),
                        rule2=_vendor_ref(patterns.index(low), low),
                        reason="Higher priority rule has lower confidence than lower priority rule",
                        recommendation="Align priority with confidence",
                    ))
    return conflicts, regex_issues


def _keyword_ref(index: int, rule: KeywordRule) -> RuleRef:
    return RuleRef(
        id=f"keyword:{index}:{rule.domain}",
        pattern=", ".join(rule.keywords),
        category_slug=rule.category_slug,
        priority=rule.weight,
    )


def validate_keyword_rules(rules: List[KeywordRule] = None) -> List[RuleConflict]:
    rules = rules if rules is not None else KEYWORD_RULES
    conflicts = []

    for i, r1 in enumerate(rules):
        kw1 = {k.lower() for k in r1.keywords}
        ex1 = {k.lower() for k in r1.exclude_keywords}

        for j in range(i + 1, len(rules)):
            r2 = rules[j]
            if r1.category_slug == r2.category_slug:
                continue
            kw2 = {k.lower() for k in r2.keywords}
            common = sorted(kw1 & kw2)
            if not common:
                continue
            ex2 = {k.lower() for k in r2.exclude_keywords}
            if (ex1 & kw2) or (ex2 & kw1):
                continue
            if len(common) >= 3:
                severity = Severity.CRITICAL
            elif len(common) == 2:
                severity = Severity.HIGH
            else:
                severity = Severity.MEDIUM
            conflicts.append(RuleConflict(
                conflict_type="overlap",
                severity=severity,
                rule_type="keyword",
                rule1=_keyword_ref(i, r1),
                rule2=_keyword_ref(j, r2),
                reason=f"{len(common)} keywords overlap between different categories",
                examples=[f"Common keywords: {', '.join(common)}"],
                recommendation="Use exclude keywords or domain scoping to disambiguate",
            ))

        contradictions = sorted(kw1 & ex1)
        if contradictions:
            conflicts.append(RuleConflict(
                conflict_type="ambiguous",
                severity=Severity.CRITICAL,
                rule_type="keyword",
                rule1=_keyword_ref(i, r1),
                reason="Rule has keywords that are also in exclude list - impossible to match",
                examples=[f"Contradictory keywords: {', '.join(contradictions)}"],
                recommendation="Remove contradictions from keywords or exclude_keywords",
            ))
    return conflicts


def validate_all_rules(
    mappings: Dict[str, MCCMapping] = None,
    patterns: List[VendorPattern] = None,
    rules: List[KeywordRule] = None,
) -> ValidationReport:
    """
    Validate every shipped rule table.

    Returns:
        ValidationReport with conflicts and regex issues sorted by severity
    """
    mappings = mappings if mappings is not None else MCC_MAPPINGS
    patterns = patterns if patterns is not None else VENDOR_PATTERNS
    rules = rules if rules is not None else KEYWORD_RULES

    conflicts = validate_mcc_rules(mappings)
    vendor_conflicts, regex_issues = validate_vendor_patterns(patterns)
    conflicts.extend(vendor_conflicts)
    conflicts.extend(validate_keyword_rules(rules))

    conflicts.sort(key=lambda c: SEVERITY_ORDER[c.severity])
    regex_issues.sort(key=lambda r: SEVERITY_ORDER[r.severity])

    return ValidationReport(
        timestamp=datetime.now(timezone.utc),
        summary=ValidationSummary(
            total_rules=len(mappings) + len(patterns) + len(rules),
            conflict_count=len(conflicts),
            critical_conflicts=sum(1 for c in conflicts if c.severity == Severity.CRITICAL),
            high_conflicts=sum(1 for c in conflicts if c.severity == Severity.HIGH),
            regex_issues=len(regex_issues),
        ),
        conflicts=conflicts,
        regex_issues=regex_issues,
        resolution_order=list(RESOLUTION_ORDER),
    )


def format_conflict_report(report: ValidationReport) -> str:
    """Render a validation report as markdown for rule authors."""
    s = report.summary
    lines = [
        "# Rule Conflict Analysis Report",
        f"Generated: {report.timestamp.isoformat()}",
        "",
        "## Summary",
        f"- Total Rules: {s.total_rules}",
        f"- Total Conflicts: {s.conflict_count}",
        f"  - Critical: {s.critical_conflicts}",
        f"  - High: {s.high_conflicts}",
        f"- Regex Safety Issues: {s.regex_issues}",
        "",
    ]

    if report.regex_issues:
        lines.append("## Regex Safety Issues")
        for issue in report.regex_issues:
            lines.append(f"### [{issue.severity.value.upper()}] {issue.rule_type}:{issue.rule_id}")
            lines.append(f"**Pattern:** `{issue.pattern}`")
            lines.append(f"**Issue:** {issue.issue}")
            lines.append(f"**Reason:** {issue.reason}")
            lines.append("")

    if report.conflicts:
        lines.append("## Rule Conflicts")
        for conflict in report.conflicts:
            lines.append(
                f"### [{conflict.severity.value.upper()}] {conflict.conflict_type} - {conflict.rule_type}"
            )
            lines.append(
                f"**Rule 1:** {conflict.rule1.pattern} -> {conflict.rule1.category_slug} "
                f"(priority: {conflict.rule1.priority or 'N/A'})"
            )
            if conflict.rule2:
                lines.append(
                    f"**Rule 2:** {conflict.rule2.pattern} -> {conflict.rule2.category_slug} "
                    f"(priority: {conflict.rule2.priority or 'N/A'})"
                )
            lines.append(f"**Reason:** {conflict.reason}")
            for example in conflict.examples:
                lines.append(f"  - {example}")
            lines.append(f"**Recommendation:** {conflict.recommendation}")
            lines.append("")

    lines.append("## Deterministic Resolution Order")
    for position, description in enumerate(report.resolution_order, start=1):
        lines.append(f"{position}. {description}")
    return "\n".join(lines)
