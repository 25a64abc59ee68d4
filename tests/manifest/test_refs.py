"""
Tests for git reference parsing.
"""

import pytest

from firmkit.manifest.refs import GitRef, RefKind


class TestGitRefParse:
    """Tests for GitRef.parse."""

    @pytest.mark.parametrize(
        "text,kind,name",
        [
            ("5.1", RefKind.TAG, "v5.1"),
            ("v5.1", RefKind.TAG, "v5.1"),
            ("v5.1.2", RefKind.TAG, "v5.1.2"),
            ("main", RefKind.BRANCH, "main"),
            ("release/v5.1", RefKind.BRANCH, "release/v5.1"),
            ("vendor", RefKind.BRANCH, "vendor"),
            ("tag:stable", RefKind.TAG, "stable"),
            ("branch:v2", RefKind.BRANCH, "v2"),
            ("commit:DEADBEEF", RefKind.COMMIT, "deadbeef"),
            ("  main  ", RefKind.BRANCH, "main"),
        ],
    )
    def test_parse(self, text, kind, name):
        assert GitRef.parse(text) == GitRef(kind, name)

    @pytest.mark.parametrize("text", ["", "   ", "commit:", "branch: "])
    def test_parse_empty(self, text):
        with pytest.raises(ValueError):
            GitRef.parse(text)

    def test_spec_string_round_trip(self):
        """Test that spec_string() parses back to the same ref."""
        for ref in (GitRef.tag("v5.1"), GitRef.branch("5.x"), GitRef.commit("abc")):
            assert GitRef.parse(ref.spec_string()) == ref


class TestGitRefMatches:
    """Tests for GitRef.matches."""

    def test_same_tag(self):
        assert GitRef.tag("v5.1").matches(GitRef.parse("5.1"))

    def test_kind_differs(self):
        assert not GitRef.tag("main").matches(GitRef.branch("main"))

    def test_commit_prefix(self):
        """Test that abbreviated hashes match full ones in both directions."""
        full = GitRef.commit("1234567890abcdef")
        short = GitRef.commit("1234567")
        assert full.matches(short)
        assert short.matches(full)
        assert not short.matches(GitRef.commit("1234568"))

    def test_str(self):
        assert str(GitRef.tag("v5.1")) == "Tag v5.1"
        assert str(GitRef.branch("main")) == "Branch main"
