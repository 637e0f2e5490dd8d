import os
import time
from datetime import datetime, timedelta, timezone

import pytest

from edgeworker.mapping import MappingRepository


@pytest.fixture
def config_dir(tmp_path):
    return str(tmp_path)


@pytest.fixture
def repo(config_dir):
    repository = MappingRepository(config_dir)
    yield repository
    repository.remove_mapping_file()


def test_sha256_generation_is_stable(repo):
    assert repo.get_sha256(b"AAA") == repo.get_sha256(b"AAA")
    assert repo.get_sha256(b"AAA") != repo.get_sha256(b"AAB")


def test_created_empty(repo):
    assert repo.size() == 0
    assert repo.get_all() == {}


def test_mod_time_zero_for_missing_file(repo):
    assert repo.get_mod_time("not-here") == 0


def test_empty_path_for_missing_mod_time(repo):
    assert repo.get_file_path(datetime.now(timezone.utc)) == ""


def test_store_and_return_values(repo, config_dir):
    mod_time = time.time_ns()
    repo.add(b"test", mod_time)
    file_path = os.path.join(config_dir, repo.get_sha256(b"test"))
    assert repo.get_mod_time(file_path) == mod_time
    assert repo.get_file_path(mod_time) == file_path
    assert repo.exists(mod_time)
    with open(file_path, "rb") as handle:
        assert handle.read() == b"test"


def test_datetime_mod_time_is_stored_in_nanoseconds(repo, config_dir):
    mod_time = datetime(2022, 2, 3, 8, 46, 38, 407474, tzinfo=timezone.utc)
    repo.add(b"test", mod_time)
    file_path = os.path.join(config_dir, repo.get_sha256(b"test"))
    assert repo.get_mod_time(file_path) == 1643877998407474000
    assert repo.get_file_path(mod_time) == file_path


def test_remove_mapping(repo, config_dir):
    mod_time = time.time_ns()
    repo.add(b"test", mod_time)
    repo.remove(b"test")
    file_path = os.path.join(config_dir, repo.get_sha256(b"test"))
    assert repo.get_mod_time(file_path) == 0
    assert repo.get_file_path(mod_time) == ""
    assert not repo.exists(mod_time)
    assert repo.size() == 0


def test_persist_mappings(repo, config_dir):
    file_path1 = os.path.join(config_dir, repo.get_sha256(b"test-one"))
    file_path2 = os.path.join(config_dir, repo.get_sha256(b"test-two"))
    mod_time1 = datetime.now(timezone.utc)
    mod_time2 = mod_time1 + timedelta(minutes=1)

    repo.add(b"test-one", mod_time1)
    assert repo.get_file_path(mod_time1) == file_path1
    repo.add(b"test-two", mod_time2)

    repo2 = MappingRepository(config_dir)
    assert repo2.get_mod_time(file_path1) == repo.get_mod_time(file_path1)
    assert repo2.get_file_path(mod_time1) == file_path1
    assert repo2.get_mod_time(file_path2) == repo.get_mod_time(file_path2)
    assert repo2.get_file_path(mod_time2) == file_path2
    assert repo2.size() == 2


def test_get_all_orders_by_mod_time(repo, config_dir):
    now = datetime.now(timezone.utc)
    repo.add(b"later", now - timedelta(hours=2))
    repo.add(b"earlier", now - timedelta(hours=3))
    assert repo.get_all() == {
        0: os.path.join(config_dir, repo.get_sha256(b"earlier")),
        1: os.path.join(config_dir, repo.get_sha256(b"later")),
    }


def test_remove_mapping_file_deletes_it(repo, config_dir):
    repo.add(b"test", time.time_ns())
    assert MappingRepository(config_dir).size() == 1
    repo.remove_mapping_file()
    reloaded = MappingRepository(config_dir)
    assert reloaded.size() == 0
    assert reloaded.get_all() == {}


def test_empty_repository_reloads_after_last_removal(repo, config_dir):
    repo.add(b"test", time.time_ns())
    repo.remove(b"test")
    assert MappingRepository(config_dir).size() == 0


def test_invalid_mapping_file_raises(config_dir):
    with open(os.path.join(config_dir, "playbook-mapping.json"), "w") as handle:
        handle.write("foo")
    with pytest.raises(ValueError):
        MappingRepository(config_dir)