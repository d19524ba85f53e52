import os
import re
from unittest.mock import patch

import pytest

from labingest.errors import StorageError
from labingest.file_store import StagingArea, generate_stored_filename


def test_generated_name_keeps_only_extension():
    name = generate_stored_filename("../../etc/Sample Data.CSV")

    assert re.fullmatch(r"\d{8}T\d{12}Z_[0-9a-f]{16}\.csv", name)
    assert "Sample" not in name


def test_generated_name_drops_unsafe_extension():
    name = generate_stored_filename("payload.c$v")

    assert re.fullmatch(r"\d{8}T\d{12}Z_[0-9a-f]{16}", name)


def test_stage_writes_confined_file(tmp_path):
    staging = StagingArea(tmp_path / "staging")

    staged = staging.stage(b"id,ph\n1,7\n", "sample.csv")

    assert staged.path.parent == (tmp_path / "staging").resolve()
    assert staged.size_bytes == 10
    assert staging.read(staged.stored_filename) == b"id,ph\n1,7\n"
    assert staging.list_staged() == [staged.stored_filename]
    if os.name == "posix":
        assert staged.path.stat().st_mode & 0o777 == 0o600


def test_resolve_rejects_names_that_were_not_generated(tmp_path):
    staging = StagingArea(tmp_path)

    for name in ["../outside.csv", "sample.csv", "", "20240101T000000000000Z_zzzz.csv"]:
        with pytest.raises(StorageError):
            staging.resolve(name)


def test_secure_delete_overwrites_before_unlinking(tmp_path):
    staging = StagingArea(tmp_path)
    original = b"secret-data" * 10
    staged = staging.stage(original, "sample.csv")

    with patch.object(type(staged.path), "unlink", lambda self, *args, **kwargs: None):
        assert staging.secure_delete(staged.stored_filename) is True

    overwritten = staged.path.read_bytes()
    assert len(overwritten) == len(original)
    assert overwritten != original

    assert staging.secure_delete(staged.stored_filename) is True
    assert not staged.path.exists()


def test_secure_delete_is_idempotent(tmp_path):
    staging = StagingArea(tmp_path)
    staged = staging.stage(b"abc", "sample.csv")

    assert staging.secure_delete(staged.stored_filename) is True
    assert staging.secure_delete(staged.stored_filename) is False


def test_read_missing_staged_file_raises_storage_error(tmp_path):
    staging = StagingArea(tmp_path)

    with pytest.raises(StorageError, match="missing"):
        staging.read(generate_stored_filename("sample.csv"))
