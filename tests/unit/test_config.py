"""Tests for configuration loading."""

from pathlib import Path

import pytest

from worktrack.config import DEFAULT_STATUS_FOLDERS, Config, find_config_file, load_config
from worktrack.errors import ConfigError


class TestDefaults:
    """Tests for the configuration used when no file exists."""

    def test_defaults_when_no_file(self, tmp_path: Path) -> None:
        config = load_config(tmp_path)
        assert config.config_dir == tmp_path.resolve()
        assert config.status_folders == DEFAULT_STATUS_FOLDERS
        assert config.start.move_to == "doing"
        assert config.start.status_action == "commit_and_push"
        assert config.done.merge_strategy == "rebase"
        assert config.done.require_checks is True
        assert config.done.merge_commit_message == "{id}: {title}"
        assert config.workspace.work_folder == ".work"
        assert config.workspace.projects == []

    def test_work_folder_path_is_relative_to_config_dir(self, tmp_path: Path) -> None:
        config = Config(config_dir=tmp_path)
        assert config.work_folder_path == tmp_path / ".work"

    def test_status_folder_lookups(self) -> None:
        config = Config()
        assert config.status_folder("doing") == "2_doing"
        assert config.status_folder("nope") is None
        assert config.status_for_folder("4_done") == "done"
        assert config.status_for_folder("elsewhere") is None


class TestFindConfigFile:
    """Tests for locating worktrack.yml."""

    def test_walks_up_from_subdirectory(self, tmp_path: Path) -> None:
        (tmp_path / "worktrack.yml").write_text("git:\n  remote: upstream\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config_file(nested) == (tmp_path / "worktrack.yml").resolve()

    def test_finds_file_in_work_folder(self, tmp_path: Path) -> None:
        (tmp_path / ".work").mkdir()
        (tmp_path / ".work" / "worktrack.yml").write_text("{}\n")
        config = load_config(tmp_path)
        # A config under .work/ still describes the project root.
        assert config.config_dir == tmp_path.resolve()


class TestLoadConfig:
    """Tests for load_config."""

    def test_values_override_defaults(self, tmp_path: Path) -> None:
        (tmp_path / "worktrack.yml").write_text(
            "git:\n"
            "  trunk_branch: develop\n"
            "  remote: upstream\n"
            "start:\n"
            "  status_action: commit_only_branch\n"
            "workspace:\n"
            "  projects:\n"
            "    - name: api\n"
            "      path: ../api\n"
        )
        config = load_config(tmp_path)
        assert config.git.trunk_branch == "develop"
        assert config.git.remote == "upstream"
        assert config.start.status_action == "commit_only_branch"
        assert config.start.move_to == "doing"
        assert config.workspace.projects[0].name == "api"

    def test_null_sections_use_defaults(self, tmp_path: Path) -> None:
        (tmp_path / "worktrack.yml").write_text("git:\ndone:\n")
        config = load_config(tmp_path)
        assert config.git.remote == ""
        assert config.done.cleanup_branch is True

    def test_empty_file(self, tmp_path: Path) -> None:
        (tmp_path / "worktrack.yml").write_text("")
        assert load_config(tmp_path).start.move_to == "doing"

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        (tmp_path / "worktrack.yml").write_text("git: [unclosed\n")
        with pytest.raises(ConfigError, match="failed to read"):
            load_config(tmp_path)

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        (tmp_path / "worktrack.yml").write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(tmp_path)

    @pytest.mark.parametrize(
        "content,message",
        [
            ("start:\n  status_action: sometimes\n", "status_action"),
            ("done:\n  merge_strategy: octopus\n", "merge_strategy"),
            ("validation:\n  id_format: '[unclosed'\n", "id_format"),
            ("workspace:\n  projects:\n    - name: ''\n", "project name"),
            ("workspace:\n  projects:\n    - name: api\n    - name: api\n", "duplicate project"),
        ],
    )
    def test_validation_errors(self, tmp_path: Path, content: str, message: str) -> None:
        (tmp_path / "worktrack.yml").write_text(content)
        with pytest.raises(ConfigError, match=message):
            load_config(tmp_path)
