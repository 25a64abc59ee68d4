"""
Tests for manifest parsing and validation.
"""

import json
import textwrap
from pathlib import Path

import pytest

from firmkit.core.exceptions import ManifestInvalid
from firmkit.core.platform import Architecture, OperatingSystem, PlatformMatcher
from firmkit.manifest.parser import load_manifest, parse_manifest, parse_sdk
from firmkit.manifest.refs import GitRef

SHA = "ab" * 32

MANIFEST_YAML = textwrap.dedent(
    f"""\
    version: 1
    tools:
      - name: cmake
        version: ">=3.20"
        bin: [bin]
        env:
          CMAKE_ROOT: "{{install_dir}}/share/cmake-{{version}}"
        entries:
          - platform: linux-x64
            version: "3.24.0"
            url: https://example.com/cmake-{{version}}-{{os}}-{{arch}}.tar.gz
            sha256: "{SHA.upper()}"
            mirror: https://mirror.example.com/cmake-{{version}}.tar.gz
          - platform: {{os: macos}}
            version: "3.24.0"
            url: https://example.com/cmake-{{version}}-macos.zip
            sha256: "{SHA}"
      - name: ninja
        optional: true
        entries:
          - version: "1.11.1"
            url: https://example.com/ninja.bin
            format: zip
            sha256: "{SHA}"
    sdk:
      url: https://git.example.com/vendor/esp-idf.git
      ref: "5.1"
      submodules: [components/bt]
      path: [tools]
      env:
        IDF_PATH: "{{sdk_path}}"
    """
)


def _tool(**overrides):
    tool = {
        "name": "cmake",
        "entries": [
            {
                "platform": "linux-x64",
                "version": "3.24.0",
                "url": "https://example.com/cmake.tar.gz",
                "sha256": SHA,
            }
        ],
    }
    tool.update(overrides)
    return tool


def _manifest(*tools, **extra):
    data = {"version": 1, "tools": list(tools)}
    data.update(extra)
    return data


class TestLoadManifest:
    """Tests for load_manifest."""

    def test_load_yaml(self, tmp_path):
        """Test a complete manifest with tools and an SDK."""
        path = tmp_path / "firmkit.yaml"
        path.write_text(MANIFEST_YAML)

        manifest = load_manifest(path)

        cmake, ninja = manifest.tools
        assert cmake.name == "cmake"
        assert cmake.constraint == ">=3.20"
        assert cmake.env == (("CMAKE_ROOT", "{install_dir}/share/cmake-{version}"),)
        linux, macos = cmake.entries
        assert linux.platform == PlatformMatcher(
            OperatingSystem.LINUX, Architecture.X64
        )
        assert linux.sha256 == SHA
        assert linux.archive_format == "tar.gz"
        assert linux.mirror == "https://mirror.example.com/cmake-{version}.tar.gz"
        assert macos.platform == PlatformMatcher(os=OperatingSystem.MACOS)
        assert macos.archive_format == "zip"

        assert ninja.optional is True
        assert ninja.constraint == "*"
        assert ninja.bin_dirs == ("bin",)
        assert ninja.entries[0].platform == PlatformMatcher()
        assert ninja.entries[0].archive_format == "zip"

        sdk = manifest.sdk
        assert sdk.ref == GitRef.tag("v5.1")
        assert sdk.shallow is True
        assert sdk.submodules == ("components/bt",)
        assert sdk.path_entries == ("tools",)
        assert sdk.env == (("IDF_PATH", "{sdk_path}"),)

    def test_load_json(self, tmp_path):
        path = tmp_path / "firmkit.json"
        path.write_text(json.dumps(_manifest(_tool())))
        assert load_manifest(path).tools[0].name == "cmake"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ManifestInvalid, match="not found"):
            load_manifest(tmp_path / "missing.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "firmkit.yaml"
        path.write_text("")
        with pytest.raises(ManifestInvalid, match="empty"):
            load_manifest(path)

    def test_syntax_error(self, tmp_path):
        path = tmp_path / "firmkit.yaml"
        path.write_text("tools: [unclosed\n")
        with pytest.raises(ManifestInvalid, match="Invalid manifest syntax"):
            load_manifest(path)


class TestParseManifest:
    """Tests for structural validation."""

    def test_tools_mapping_form(self):
        """Test the name -> definition form of the tools section."""
        tool = _tool()
        del tool["name"]
        manifest = parse_manifest({"version": 1, "tools": {"cmake": tool}})
        assert manifest.tools[0].name == "cmake"

    def test_no_tools(self):
        assert parse_manifest({"version": 1}).tools == ()

    @pytest.mark.parametrize(
        "data,message",
        [
            ([], "must be a mapping"),
            ({"tools": []}, "Missing required field: version"),
            ({"version": 2}, "Unsupported manifest version"),
            ({"version": 1, "toolz": []}, "Unknown field"),
            ({"version": 1, "tools": "cmake"}, "'tools' must be a list"),
        ],
    )
    def test_document_errors(self, data, message):
        with pytest.raises(ManifestInvalid, match=message):
            parse_manifest(data)

    def test_duplicate_tool(self):
        with pytest.raises(ManifestInvalid, match="Duplicate tool name: cmake"):
            parse_manifest(_manifest(_tool(), _tool()))

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"name": ""}, "missing required field: name"),
            ({"entries": []}, "at least one entry"),
            ({"version": 3.1}, "quote numeric versions"),
            ({"version": ">=3.0,<"}, "Invalid version constraint"),
            ({"bin": ["/usr/bin"]}, "must be a relative path"),
            ({"bin": ["../bin"]}, "must be a relative path"),
            ({"env": {"PATH": "x"}}, "PATH is composed"),
            ({"env": {"1BAD": "x"}}, "invalid variable name"),
            ({"env": {"ROOT": "{sdk_path}"}}, "unknown placeholder"),
            ({"optional": "yes"}, "true or false"),
            ({"homepage": "x"}, "Unknown field"),
        ],
    )
    def test_tool_errors(self, overrides, message):
        with pytest.raises(ManifestInvalid, match=message):
            parse_manifest(_manifest(_tool(**overrides)))

    @pytest.mark.parametrize(
        "entry_overrides,message",
        [
            ({"sha256": "abc"}, "64 hexadecimal"),
            ({"version": None}, "missing required field: version"),
            ({"url": "https://x/{tool}.tar.gz"}, "unknown placeholder"),
            ({"url": "https://x/{0}.tar.gz"}, "Positional placeholder"),
            ({"url": "https://x/{version.major}.tar.gz"}, "Invalid placeholder"),
            ({"url": "https://x/tool.rar"}, "Unsupported archive format"),
            ({"format": "rar"}, "Unsupported archive format"),
            ({"platform": "beos"}, "Unknown operating system"),
            ({"size": 10}, "Unknown field"),
        ],
    )
    def test_entry_errors(self, entry_overrides, message):
        tool = _tool()
        tool["entries"][0].update(entry_overrides)
        with pytest.raises(ManifestInvalid, match=message):
            parse_manifest(_manifest(tool))

    def test_format_detected_ignores_query(self):
        tool = _tool()
        tool["entries"][0]["url"] = "https://x/ninja.zip?download=1"
        manifest = parse_manifest(_manifest(tool))
        assert manifest.tools[0].entries[0].archive_format == "zip"


class TestParseSdk:
    """Tests for the sdk section."""

    def test_minimal(self):
        sdk = parse_sdk({"url": "https://git.example.com/sdk.git", "ref": "main"})
        assert sdk.ref == GitRef.branch("main")
        assert sdk.submodules == ()
        assert sdk.repo_name == "sdk"

    def test_commit_ref(self):
        sdk = parse_sdk(
            {
                "url": "git@example.com:sdk.git",
                "ref": "commit:ABCDEF1",
                "shallow": False,
            }
        )
        assert sdk.ref == GitRef.commit("abcdef1")
        assert sdk.shallow is False
        assert sdk.repo_name == "sdk"

    @pytest.mark.parametrize(
        "data,message",
        [
            ("https://x", "must be a mapping"),
            ({"ref": "main"}, "missing required field: url"),
            ({"url": "https://x/sdk.git"}, "missing required field: ref"),
            ({"url": "https://x/sdk.git", "ref": "tag:"}, "sdk.ref"),
            ({"url": "https://x/sdk.git", "ref": "main", "depth": 1}, "Unknown"),
            (
                {"url": "https://x/sdk.git", "ref": "main", "env": {"A": "{x}"}},
                "unknown placeholder",
            ),
            (
                {"local": "/opt/esp-idf", "url": "https://x/sdk.git"},
                "cannot be combined",
            ),
            ({"local": "/opt/esp-idf", "patches": ["a.patch"]}, "cannot be combined"),
            (
                {"url": "https://x/sdk.git", "ref": "main", "patches": [""]},
                "sdk.patches",
            ),
        ],
    )
    def test_errors(self, data, message):
        with pytest.raises(ManifestInvalid, match=message):
            parse_sdk(data)

    def test_local_tree(self, tmp_path):
        sdk = parse_sdk(
            {"local": "vendor/esp-idf", "path": ["tools"]}, base_dir=tmp_path
        )
        assert sdk.is_local
        assert sdk.local_path == tmp_path / "vendor" / "esp-idf"
        assert sdk.url is None
        assert sdk.ref is None
        assert sdk.path_entries == ("tools",)

    def test_patches_relative_to_manifest(self, tmp_path):
        """Test that patch paths in a manifest file resolve beside it."""
        manifest_file = tmp_path / "firmkit.yaml"
        manifest_file.write_text(
            textwrap.dedent(
                """\
                version: 1
                sdk:
                  url: https://git.example.com/vendor/esp-idf.git
                  ref: v5.1
                  patches: [patches/0001-fix.patch, /srv/0002-log.patch]
                """
            )
        )

        sdk = load_manifest(manifest_file).sdk

        assert sdk.patches == (
            tmp_path / "patches" / "0001-fix.patch",
            Path("/srv/0002-log.patch"),
        )
        assert not sdk.is_local
