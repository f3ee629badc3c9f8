"""Tests for branch-name and PR label conventions."""

from __future__ import annotations

import pytest

from homespun.branches import (
    extract_group,
    extract_linked_id,
    extract_type,
    generate_branch_name,
    get_pr_label,
    has_pr_label,
    is_pr_label,
    parse_pr_number,
    sanitize_for_branch,
)


class TestExtractLinkedId:
    @pytest.mark.parametrize(("branch", "expected"), [
        ("issues/feature/link-issues+hsp-kca", "hsp-kca"),
        ("feature/a+b+c", "c"),
        ("+abc", "abc"),
    ])
    def test_text_after_last_plus(self, branch: str, expected: str) -> None:
        assert extract_linked_id(branch) == expected

    @pytest.mark.parametrize("branch", [
        "issues/feature/no-link",
        "issues/feature/trailing+",
        "",
        "   ",
        None,
    ])
    def test_absent(self, branch: str | None) -> None:
        assert extract_linked_id(branch) is None

    def test_round_trip_through_generated_name(self) -> None:
        name = generate_branch_name("abc123", "bug", "Fix the crash")
        assert extract_linked_id(name) == "abc123"


class TestGroupAndType:
    def test_parts(self) -> None:
        assert extract_group("core/feature/x+1") == "core"
        assert extract_type("core/feature/x+1") == "feature"

    def test_single_segment(self) -> None:
        assert extract_group("main") is None
        assert extract_type("main") is None
        assert extract_group(None) is None


class TestSanitize:
    @pytest.mark.parametrize(("title", "expected"), [
        ("Add New Feature!", "add-new-feature"),
        ("foo__bar  baz", "foo-bar-baz"),
        ("--Leading and trailing--", "leading-and-trailing"),
        ("Ünïcode & symbols", "ncode-symbols"),
    ])
    def test_sanitized(self, title: str, expected: str) -> None:
        assert sanitize_for_branch(title) == expected

    def test_blank_title_placeholder(self) -> None:
        assert sanitize_for_branch("   ") == "<title>"


class TestGenerateBranchName:
    def test_defaults(self) -> None:
        assert generate_branch_name("hsp-kca", "Feature", "Link issues") == "issues/feature/link-issues+hsp-kca"

    def test_explicit_group_and_branch_id(self) -> None:
        name = generate_branch_name("42", "bug", "ignored", group="core", branch_id=" crash-fix ")
        assert name == "core/bug/crash-fix+42"

    def test_blank_overrides_fall_back(self) -> None:
        name = generate_branch_name("42", "chore", "Tidy up", group=" ", branch_id="")
        assert name == "issues/chore/tidy-up+42"


class TestPrLabels:
    def test_label_format(self) -> None:
        assert get_pr_label(17) == "hsp:pr-17"

    @pytest.mark.parametrize("number", [0, 1, 42, 123456])
    def test_parse_round_trip(self, number: int) -> None:
        assert parse_pr_number(get_pr_label(number)) == number

    @pytest.mark.parametrize("label", [
        "hsp:pr-",
        "hsp:pr-abc",
        "hsp:pr--1",
        "hsp:pr-+1",
        "hsp:pr-007",
        "hsp:pr- 7",
        "hsp:pr-١٢",
        "pr-12",
        "",
        None,
    ])
    def test_parse_rejects(self, label: str | None) -> None:
        assert parse_pr_number(label) is None

    def test_is_pr_label(self) -> None:
        assert is_pr_label("hsp:pr-3")
        assert not is_pr_label("bug")
        assert not is_pr_label(None)

    def test_has_pr_label(self) -> None:
        assert has_pr_label(["bug", "hsp:pr-3"])
        assert not has_pr_label(["bug"])
        assert not has_pr_label(None)
