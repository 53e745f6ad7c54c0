from stepcat.core.models import IssueSeverity
from stepcat.core.review import (
    ReviewFailed,
    ReviewFinding,
    ReviewPassed,
    ReviewUnparseable,
    extract_balanced_object,
    parse_review_output,
)


def test_pass_with_no_issues() -> None:
    verdict = parse_review_output('{"result": "PASS", "issues": []}')
    assert verdict == ReviewPassed(findings=())


def test_fail_decodes_findings_from_fenced_block() -> None:
    raw = (
        "Here is my review.\n"
        "```json\n"
        '{"result": "FAIL", "issues": ['
        '{"file": "app.py", "line": 12, "severity": "error", "description": "  off by one "},'
        '{"file": "util.py", "severity": "warning", "description": "rename helper"}'
        "]}\n"
        "```\n"
    )
    verdict = parse_review_output(raw)
    assert isinstance(verdict, ReviewFailed)
    assert verdict.findings == (
        ReviewFinding(file="app.py", description="off by one", line=12),
        ReviewFinding(
            file="util.py", description="rename helper", severity=IssueSeverity.WARNING
        ),
    )


def test_balanced_object_inside_prose() -> None:
    raw = 'Summary: {"result": "FAIL", "issues": [{"file": "a", "description": "b"}]} done'
    verdict = parse_review_output(raw)
    assert isinstance(verdict, ReviewFailed)
    assert verdict.findings[0].severity == IssueSeverity.ERROR


def test_boolean_line_is_dropped() -> None:
    raw = '{"result": "FAIL", "issues": [{"file": "a", "line": true, "description": "b"}]}'
    verdict = parse_review_output(raw)
    assert isinstance(verdict, ReviewFailed)
    assert verdict.findings[0].line is None


def test_invalid_result_is_unparseable() -> None:
    verdict = parse_review_output('{"result": "MAYBE", "issues": []}')
    assert isinstance(verdict, ReviewUnparseable)
    assert "PASS or FAIL" in verdict.reason
    assert verdict.raw_excerpt.startswith("{")


def test_missing_issue_fields_are_unparseable() -> None:
    verdict = parse_review_output('{"result": "FAIL", "issues": [{"file": "a"}]}')
    assert isinstance(verdict, ReviewUnparseable)
    assert "description" in verdict.reason


def test_invalid_severity_is_unparseable() -> None:
    raw = '{"result": "FAIL", "issues": [{"file": "a", "description": "b", "severity": "fatal"}]}'
    assert isinstance(parse_review_output(raw), ReviewUnparseable)


def test_plain_text_is_unparseable() -> None:
    verdict = parse_review_output("Looks good to me!")
    assert isinstance(verdict, ReviewUnparseable)
    assert verdict.reason == "no JSON review object found"
    assert "Raw output:\nLooks good to me!" in verdict.describe()


def test_extract_balanced_object_handles_strings_with_braces() -> None:
    text = 'noise {"a": "x}y", "b": {"c": 1}} tail'
    assert extract_balanced_object(text) == '{"a": "x}y", "b": {"c": 1}}'
    assert extract_balanced_object("no braces") is None
