"""Tests for the host store and record normalization."""

import json

import pytest

from hostpilot.store import HostStore, JsonHostStore, host_to_dict, normalize_host, normalize_hosts


def host_record(**overrides) -> dict:
    record = {
        "id": "h1",
        "name": "staging",
        "host": "10.0.0.5",
        "port": 2222,
        "username": "deploy",
        "auth_type": "password",
        "password": "pw",
        "forwards": [
            {"id": "f1", "local_port": 15432, "remote_host": "127.0.0.1", "remote_port": 5432, "auto_start": True},
        ],
        "services": [
            {"id": "s1", "name": "api", "start_command": "npm run dev", "exposed_port": 3000,
             "forward_local_port": 13000},
        ],
    }
    record.update(overrides)
    return record


class TestNormalization:
    """Tests for turning raw records into host configs."""

    def test_valid_record(self) -> None:
        """Test a complete record keeps every field."""
        host = normalize_host(host_record())

        assert host.name == "staging"
        assert host.connection.address == "10.0.0.5:2222"
        assert host.connection.uses_password
        assert host.forwards[0].local_host == "127.0.0.1"
        assert host.forwards[0].auto_start is True
        assert host.services[0].forward_local_port == 13000
        assert host.services[0].pid is None

    @pytest.mark.parametrize("field", ["name", "host", "username"])
    def test_missing_required_field(self, field: str) -> None:
        """Test hosts without name, host or username are dropped."""
        record = host_record()
        del record[field]

        assert normalize_host(record) is None

    def test_bad_port(self) -> None:
        """Test an out-of-range SSH port drops the host."""
        assert normalize_host(host_record(port=70000)) is None

    def test_malformed_children_are_dropped(self) -> None:
        """Test bad forwards and services are skipped, not fatal."""
        record = host_record(
            forwards=[{"id": "bad", "local_port": 0, "remote_host": "x", "remote_port": 1}, "junk"],
            services=[
                {"id": "s1", "name": "api", "start_command": "", "exposed_port": 3000},
                {"id": "s2", "name": "db", "start_command": "pg_ctl start", "exposed_port": 5432,
                 "forward_local_port": 99999},
                {"id": "s3", "name": "ok", "start_command": "sleep 5", "exposed_port": 0, "pid": "12"},
            ],
        )

        host = normalize_host(record)

        assert host.forwards == []
        assert [s.id for s in host.services] == ["s3"]
        assert host.services[0].pid is None

    def test_jump_is_one_level(self) -> None:
        """Test a nested jump under the jump host is dropped."""
        record = host_record(jump={
            "host": "bastion", "username": "ops", "auth_type": "password", "password": "x",
            "jump": {"host": "outer", "username": "ops", "auth_type": "password", "password": "y"},
        })

        host = normalize_host(record)

        assert host.connection.jump.host == "bastion"
        assert host.connection.jump.jump is None

    def test_key_auth(self) -> None:
        """Test key records keep key material and no password."""
        record = host_record(auth_type="private_key", private_key_path="~/.ssh/id_ed25519", passphrase="pp")
        del record["password"]

        conn = normalize_host(record).connection

        assert not conn.uses_password
        assert conn.private_key_path == "~/.ssh/id_ed25519"
        assert conn.passphrase == "pp"

    def test_non_list_document(self) -> None:
        """Test anything but a list yields no hosts."""
        assert normalize_hosts({"hosts": []}) == []


class TestHostStore:
    """Tests for the in-memory store."""

    def test_returns_copies(self) -> None:
        """Test callers cannot mutate stored hosts."""
        store = HostStore([normalize_host(host_record())])

        host = store.get_host("h1")
        host.services[0].pid = 999

        assert store.get_host("h1").services[0].pid is None

    def test_update_service(self) -> None:
        """Test runtime fields are written back."""
        store = HostStore([normalize_host(host_record())])

        store.update_service("h1", "s1", pid=4242, log_path="/tmp/service-manager/staging_api.log")

        service = store.get_host("h1").services[0]
        assert service.pid == 4242
        assert service.log_path == "/tmp/service-manager/staging_api.log"

    def test_update_service_rejects_config_fields(self) -> None:
        """Test only runtime fields may be written."""
        store = HostStore([normalize_host(host_record())])

        with pytest.raises(ValueError):
            store.update_service("h1", "s1", start_command="rm -rf /")

    def test_removals(self) -> None:
        """Test services, forwards and hosts can be removed."""
        store = HostStore([normalize_host(host_record())])

        store.remove_service("h1", "s1")
        store.remove_forward("h1", "f1")
        assert store.get_host("h1").services == []
        assert store.get_host("h1").forwards == []

        store.remove_host("h1")
        assert store.get_host("h1") is None


class TestJsonHostStore:
    """Tests for the JSON-file store."""

    def test_missing_file_yields_no_hosts(self, tmp_path) -> None:
        """Test loading a missing file is not an error."""
        store = JsonHostStore(tmp_path / "hosts.json")

        store.load()

        assert store.list_hosts() == []

    def test_load_skips_malformed(self, tmp_path) -> None:
        """Test malformed host records are skipped on load."""
        path = tmp_path / "hosts.json"
        path.write_text(json.dumps([host_record(), {"name": "no host"}]))
        store = JsonHostStore(path)

        store.load()

        assert [h.id for h in store.list_hosts()] == ["h1"]

    def test_writes_persist(self, tmp_path) -> None:
        """Test runtime write-backs survive a reload."""
        path = tmp_path / "hosts.json"
        path.write_text(json.dumps([host_record()]))
        store = JsonHostStore(path)
        store.load()

        store.update_service("h1", "s1", pid=4242)

        reloaded = JsonHostStore(path)
        reloaded.load()
        assert reloaded.get_host("h1").services[0].pid == 4242
        assert host_to_dict(reloaded.get_host("h1"))["auth_type"] == "password"
