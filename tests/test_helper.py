"""Tests for template merging, borg argument construction and credentials."""

import datetime
import pathlib
from unittest.mock import MagicMock

import pytest
import sh

from borrg import errors, helper, model

NOW = datetime.datetime(2024, 1, 2, 3, 4, 5)


class TestMergeWithTemplate:
    def test_section_values_win(self) -> None:
        template = model.Section(progress=True, stats=True, comment="template")
        section = model.Section(repository="/a", stats=False)
        merged = helper.merge_with_template(template, section)
        assert merged.repository == "/a"
        assert merged.progress is True
        assert merged.stats is False
        assert merged.comment == "template"

    def test_compression_replaced_whole(self) -> None:
        template = model.Section(
            compression=model.Compression(algorithm="zstd", level=19, auto=True)
        )
        section = model.Section(compression=model.Compression(algorithm="none"))
        merged = helper.merge_with_template(template, section)
        assert merged.compression == model.Compression(algorithm="none")

    def test_empty_template(self) -> None:
        section = model.Section(repository="/a", path=("/x", "/y"))
        assert helper.merge_with_template(model.Section(), section) == section

    def test_inputs_untouched(self) -> None:
        template = model.Section(path=("/t",))
        section = model.Section(repository="/a")
        helper.merge_with_template(template, section)
        assert template == model.Section(path=("/t",))
        assert section == model.Section(repository="/a")


class TestCreateArguments:
    def test_full_argument_list(self, tmp_path: pathlib.Path) -> None:
        (tmp_path / ".borgignore").write_text("*.tmp\n")
        target = model.ResolvedTarget(
            repository="/repo",
            path=(str(tmp_path),),
            compression=model.Compression(algorithm="zstd", level=3),
            progress=True,
        )
        assert helper.get_create_arguments(target, log_json=True, now=NOW) == [
            "create",
            "--progress",
            "--log-json",
            "--comment",
            model.DEFAULT_COMMENT,
            "--compression",
            "zstd,3",
            "--exclude-from",
            str(tmp_path / ".borgignore"),
            "/repo::2024-01-02",
            str(tmp_path),
        ]

    def test_missing_exclude_file_is_skipped(self, tmp_path: pathlib.Path) -> None:
        target = model.ResolvedTarget(repository="/repo", path=(str(tmp_path),))
        args = helper.get_create_arguments(target, now=NOW)
        assert "--exclude-from" not in args

    def test_flags(self, tmp_path: pathlib.Path) -> None:
        target = model.ResolvedTarget(
            repository="/repo", path=(str(tmp_path),), stats=True
        )
        args = helper.get_create_arguments(target, dry_run=True, now=NOW)
        assert "--stats" in args
        assert "--dry-run" in args
        assert "--progress" not in args
        assert "--log-json" not in args

    def test_relative_pattern_file(self, tmp_path: pathlib.Path) -> None:
        target = model.ResolvedTarget(
            repository="/repo",
            path=(str(tmp_path / "a"), str(tmp_path / "b")),
            pattern_file="patterns.lst",
        )
        args = helper.get_create_arguments(target, now=NOW)
        index = args.index("--patterns-from")
        assert args[index + 1] == str(tmp_path / "a" / "patterns.lst")

    def test_absolute_pattern_file(self, tmp_path: pathlib.Path) -> None:
        target = model.ResolvedTarget(
            repository="/repo",
            path=(str(tmp_path),),
            pattern_file="/etc/borg/patterns",
        )
        args = helper.get_create_arguments(target, now=NOW)
        index = args.index("--patterns-from")
        assert args[index + 1] == "/etc/borg/patterns"

    def test_home_is_default_path(self) -> None:
        target = model.ResolvedTarget(repository="/repo", exclude_file=None)
        args = helper.get_create_arguments(target, now=NOW)
        assert args[-1] == str(pathlib.Path.home().absolute())
        assert args[-2] == "/repo::2024-01-02"

    def test_archive_name_pattern(self) -> None:
        target = model.ResolvedTarget(
            repository="/repo", archive_name="{hostname}-%Y%m%d-%H%M"
        )
        assert helper.get_archive_name(target, NOW) == "{hostname}-20240102-0304"


class TestInitArguments:
    def test_minimal(self) -> None:
        target = model.ResolvedTarget(repository="/repo")
        assert helper.get_init_arguments(target, "repokey") == [
            "init",
            "--encryption",
            "repokey",
            "/repo",
        ]

    def test_all_options(self) -> None:
        target = model.ResolvedTarget(repository="/repo")
        assert helper.get_init_arguments(
            target,
            "keyfile-blake2",
            append_only=True,
            storage_quota=5 * 1024**3,
            make_parent_dirs=True,
        ) == [
            "init",
            "--encryption",
            "keyfile-blake2",
            "--append-only",
            "--storage-quota",
            str(5 * 1024**3),
            "--make-parent-dirs",
            "/repo",
        ]


class TestParseByteSize:
    @pytest.mark.parametrize(
        "size, expected",
        [
            ("1", 1),
            ("1K", 1024),
            ("1M", 1024**2),
            ("1G", 1024**3),
            ("1T", 1024**4),
            ("1P", 1024**5),
            ("25G", 25 * 1024**3),
        ],
    )
    def test_valid(self, size: str, expected: int) -> None:
        assert helper.parse_byte_size(size) == expected

    @pytest.mark.parametrize("size", ["1X", "X", "", "1.5G", "G1"])
    def test_invalid(self, size: str) -> None:
        with pytest.raises(ValueError):
            helper.parse_byte_size(size)


class TestCredentialEnv:
    def test_literal(self) -> None:
        target = model.ResolvedTarget(
            repository="/a", credential=model.PassphraseCredential(passphrase="x")
        )
        assert helper.get_credential_env(target) == {"BORG_PASSPHRASE": "x"}

    def test_file_descriptor(self) -> None:
        target = model.ResolvedTarget(
            repository="/a", credential=model.FileDescriptorCredential(fd=5)
        )
        assert helper.get_credential_env(target) == {"BORG_PASSPHRASE_FD": "5"}

    def test_none(self) -> None:
        target = model.ResolvedTarget(repository="/a")
        assert helper.get_credential_env(target) == {}

    def test_command_uses_first_line(self) -> None:
        target = model.ResolvedTarget(
            repository="/a",
            credential=model.CommandCredential(command="echo secret; echo other"),
        )
        assert helper.get_credential_env(target) == {"BORG_PASSPHRASE": "secret"}

    def test_command_failure(self) -> None:
        target = model.ResolvedTarget(
            repository="/a", credential=model.CommandCredential(command="exit 3")
        )
        with pytest.raises(errors.CredentialError) as excinfo:
            helper.get_credential_env(target)
        assert excinfo.value.repository == "/a"
        assert "3" in str(excinfo.value)

    def test_command_without_output(self) -> None:
        target = model.ResolvedTarget(
            repository="/a", credential=model.CommandCredential(command="true")
        )
        with pytest.raises(errors.CredentialError):
            helper.get_credential_env(target)

    def test_execution_env_keeps_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("BORRG_TEST_VALUE", "kept")
        target = model.ResolvedTarget(
            repository="/a", credential=model.PassphraseCredential(passphrase="x")
        )
        env = helper.get_execution_env(target)
        assert env["BORRG_TEST_VALUE"] == "kept"
        assert env["BORG_PASSPHRASE"] == "x"


class TestGetTarget:
    config = model.RootConfiguration(
        backups=(
            model.ResolvedTarget(repository="/a"),
            model.ResolvedTarget(repository="/b"),
        )
    )

    def test_by_repository(self) -> None:
        assert helper.get_target(self.config, "/b").repository == "/b"

    def test_by_index(self) -> None:
        assert helper.get_target(self.config, "0").repository == "/a"

    def test_unknown(self) -> None:
        with pytest.raises(SystemExit):
            helper.get_target(self.config, "/c")

    def test_index_out_of_range(self) -> None:
        with pytest.raises(SystemExit):
            helper.get_target(self.config, "2")


class TestRunCommandPolitely:
    @pytest.fixture
    def borg(self) -> MagicMock:
        return MagicMock(return_value=MagicMock(spec=sh.RunningCommand))

    def test_defaults(self, borg: MagicMock, monkeypatch) -> None:
        monkeypatch.setenv("BORRG_TEST_VALUE", "kept")
        helper.run_command_politely(borg, ["create"])
        kwargs = borg.call_args.kwargs
        assert borg.call_args.args == ("create",)
        assert kwargs["_ok_code"] == [0]
        assert kwargs["_env"]["BORRG_TEST_VALUE"] == "kept"
        borg.return_value.wait.assert_called_once()

    def test_defaults_are_not_shared_between_calls(
        self, borg: MagicMock, monkeypatch
    ) -> None:
        monkeypatch.delenv("BORG_PASSPHRASE", raising=False)
        helper.run_command_politely(borg, ["create"])
        first = borg.call_args.kwargs
        first["_env"]["BORG_PASSPHRASE"] = "x"
        first["_ok_code"].append(1)

        helper.run_command_politely(borg, ["create"])
        second = borg.call_args.kwargs
        assert second["_env"] is not first["_env"]
        assert "BORG_PASSPHRASE" not in second["_env"]
        assert second["_ok_code"] == [0]

    def test_explicit_values(self, borg: MagicMock) -> None:
        helper.run_command_politely(borg, ["create"], {"A": "1"}, [0, 1])
        kwargs = borg.call_args.kwargs
        assert kwargs["_env"] == {"A": "1"}
        assert kwargs["_ok_code"] == [0, 1]
