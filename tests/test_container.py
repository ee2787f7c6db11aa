import io
import tarfile
import threading

import pytest

from dockertestkit.client import SESSION_ID, NotFoundError
from dockertestkit.container import (
    STDERR_LOG,
    STDOUT_LOG,
    DockerContainer,
    DockerNetwork,
    Log,
    demultiplex,
)
from dockertestkit.ports import Port, PortBinding

CONTAINER_ID = "0123456789abcdef0123"


def frame(stream_type, payload):
    return bytes([stream_type, 0, 0, 0]) + len(payload).to_bytes(4, "big") + payload


class FakeClient:
    def __init__(self, inspect=None):
        self.inspect = inspect or {}
        self.inspect_error = None
        self.calls = []
        self.logs_payload = b""
        self.follow_payloads = []
        self.exec_output = b""
        self.exec_states = [{"Running": False, "ExitCode": 0}]
        self.archive = b""
        self.copied = []

    def container_inspect(self, container_id):
        self.calls.append(("inspect", container_id))
        if self.inspect_error is not None:
            raise self.inspect_error
        return self.inspect

    def container_start(self, container_id):
        self.calls.append(("start", container_id))

    def container_stop(self, container_id, timeout=None):
        self.calls.append(("stop", container_id, timeout))

    def container_remove(self, container_id, remove_volumes=False, force=False):
        self.calls.append(("remove", container_id, remove_volumes, force))

    def image_remove(self, image, force=False, prune_children=False):
        self.calls.append(("image_remove", image, force, prune_children))
        return []

    def close(self):
        self.calls.append(("close",))

    def container_logs(self, container_id, follow=False, since=""):
        if follow:
            data = self.follow_payloads.pop(0) if self.follow_payloads else b""
            return io.BytesIO(data)
        return io.BytesIO(self.logs_payload)

    def exec_create(self, container_id, cmd):
        self.calls.append(("exec_create", container_id, list(cmd)))
        return "exec-1"

    def exec_start(self, exec_id):
        return io.BytesIO(self.exec_output)

    def exec_inspect(self, exec_id):
        self.calls.append(("exec_inspect", exec_id))
        return self.exec_states.pop(0)

    def copy_to_container(self, container_id, path, data):
        self.copied.append((path, data.read()))

    def copy_from_container(self, container_id, path):
        return io.BytesIO(self.archive)

    def network_remove(self, network_id):
        self.calls.append(("network_remove", network_id))


class FakeProvider:
    def __init__(self, client, host="localhost"):
        self.client = client
        self._host = host

    def daemon_host(self):
        return self._host


def inspect_with_ports(ports, network_mode="bridge", networks=None, ip=""):
    return {
        "Name": "/my-container",
        "HostConfig": {"NetworkMode": network_mode},
        "NetworkSettings": {"Ports": ports, "Networks": networks or {}, "IPAddress": ip},
        "State": {"Running": True, "Status": "running"},
    }


def make_container(inspect=None, **kwargs):
    client = FakeClient(inspect)
    container = DockerContainer(CONTAINER_ID, FakeProvider(client), image="nginx", **kwargs)
    return container, client


PORTS = {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32768"}]}


def test_demultiplex_splits_frames():
    data = frame(1, b"hello") + frame(2, b"oops")
    assert list(demultiplex(io.BytesIO(data))) == [(1, b"hello"), (2, b"oops")]


def test_demultiplex_empty_stream():
    assert list(demultiplex(io.BytesIO(b""))) == []


def test_demultiplex_truncated_frame_raises():
    data = frame(1, b"hello")[:-2]
    with pytest.raises(ValueError):
        list(demultiplex(io.BytesIO(data)))


def test_demultiplex_truncated_header_raises():
    with pytest.raises(ValueError):
        list(demultiplex(io.BytesIO(b"\x01\x00\x00")))


def test_logs_strip_stream_headers():
    container, client = make_container()
    client.logs_payload = frame(1, b"hello\n") + frame(2, b"err\n")
    assert container.logs().read() == b"hello\nerr\n"


def test_ports_converted():
    container, _ = make_container(inspect_with_ports(PORTS))
    ports = container.ports()
    assert ports == {Port("80/tcp"): [PortBinding(host_ip="0.0.0.0", host_port="32768")]}


def test_mapped_port_found():
    container, _ = make_container(inspect_with_ports(PORTS))
    mapped = container.mapped_port("80/tcp")
    assert mapped.port() == "32768"
    assert mapped.proto() == "tcp"


def test_mapped_port_without_proto_matches_tcp():
    container, _ = make_container(inspect_with_ports(PORTS))
    assert container.mapped_port("80").port() == "32768"


def test_mapped_port_wrong_proto_not_found():
    container, _ = make_container(inspect_with_ports(PORTS))
    with pytest.raises(LookupError, match="port not found"):
        container.mapped_port("80/udp")


def test_mapped_port_skips_unpublished():
    container, _ = make_container(inspect_with_ports({"80/tcp": None}))
    with pytest.raises(LookupError):
        container.mapped_port("80/tcp")


def test_mapped_port_host_network_returns_given_port():
    container, _ = make_container(inspect_with_ports({}, network_mode="host"))
    assert container.mapped_port("8080/tcp") == "8080/tcp"


def test_port_endpoint_with_and_without_proto():
    container, _ = make_container(inspect_with_ports(PORTS))
    assert container.port_endpoint("80/tcp", "http") == "http://localhost:32768"
    assert container.port_endpoint("80/tcp") == "localhost:32768"


def test_endpoint_uses_first_port():
    container, _ = make_container(inspect_with_ports(PORTS))
    assert container.endpoint("http") == "http://localhost:32768"


def test_endpoint_without_ports_fails():
    container, _ = make_container(inspect_with_ports({}))
    with pytest.raises(LookupError):
        container.endpoint("http")


def test_host_comes_from_provider():
    client = FakeClient()
    container = DockerContainer(CONTAINER_ID, FakeProvider(client, host="10.0.0.5"))
    assert container.host() == "10.0.0.5"


def test_name_and_networks():
    networks = {"new-network": {"IPAddress": "172.18.0.2", "Aliases": ["alias1", "alias2"]}}
    container, _ = make_container(inspect_with_ports({}, networks=networks))
    assert container.name() == "/my-container"
    assert container.networks() == ["new-network"]
    assert container.network_aliases() == {"new-network": ["alias1", "alias2"]}


def test_network_aliases_empty_when_none():
    networks = {"bridge": {"IPAddress": "172.17.0.2", "Aliases": None}}
    container, _ = make_container(inspect_with_ports({}, networks=networks))
    assert container.network_aliases() == {"bridge": []}


def test_container_ip_prefers_primary_address():
    networks = {"bridge": {"IPAddress": "172.17.0.2"}}
    container, _ = make_container(inspect_with_ports({}, networks=networks, ip="172.17.0.9"))
    assert container.container_ip() == "172.17.0.9"


def test_container_ip_falls_back_to_single_network():
    networks = {"new-network": {"IPAddress": "172.18.0.2"}}
    container, _ = make_container(inspect_with_ports({}, networks=networks))
    assert container.container_ip() == "172.18.0.2"


def test_container_ip_empty_with_several_networks():
    networks = {"a": {"IPAddress": "172.18.0.2"}, "b": {"IPAddress": "172.19.0.2"}}
    container, _ = make_container(inspect_with_ports({}, networks=networks))
    assert container.container_ip() == ""
    assert sorted(container.container_ips()) == ["172.18.0.2", "172.19.0.2"]


def test_start_waits_and_marks_running():
    seen = []

    class Strategy:
        def wait_until_ready(self, target):
            seen.append(target)

    container, client = make_container(waiting_for=Strategy())
    container.start()
    assert ("start", CONTAINER_ID) in client.calls
    assert seen == [container]
    assert container.is_running()


def test_start_propagates_wait_failure():
    class Strategy:
        def wait_until_ready(self, target):
            raise TimeoutError("not ready")

    container, _ = make_container(waiting_for=Strategy())
    with pytest.raises(TimeoutError):
        container.start()
    assert not container.is_running()


def test_stop_passes_whole_seconds():
    container, client = make_container(is_running=True)
    container.stop(10.7)
    assert ("stop", CONTAINER_ID, 10) in client.calls
    assert not container.is_running()


def test_stop_without_timeout():
    container, client = make_container()
    container.stop()
    assert ("stop", CONTAINER_ID, None) in client.calls


def test_terminate_resets_state():
    signals = []
    container, client = make_container(
        termination_signal=lambda: signals.append(True), is_running=True
    )
    assert container.session_id() == SESSION_ID
    container.terminate()
    assert container.session_id() == "00000000-0000-0000-0000-000000000000"
    assert not container.is_running()
    assert signals == [True]
    assert ("remove", CONTAINER_ID, True, True) in client.calls
    assert not any(call[0] == "image_remove" for call in client.calls)


def test_terminate_removes_built_image():
    container, client = make_container(image_was_built=True)
    container.terminate()
    assert ("image_remove", "nginx", True, True) in client.calls


def test_state_after_failure_without_raw():
    container, client = make_container()
    client.inspect_error = NotFoundError("No such container", 404)
    with pytest.raises(NotFoundError) as info:
        container.state()
    assert getattr(info.value, "last_known_state", None) is None


def test_state_after_failure_keeps_last_state():
    container, client = make_container(inspect_with_ports({}))
    assert container.state() == {"Running": True, "Status": "running"}
    client.inspect_error = NotFoundError("No such container", 404)
    with pytest.raises(NotFoundError) as info:
        container.state()
    assert info.value.last_known_state == {"Running": True, "Status": "running"}


def test_exec_returns_exit_code_and_output():
    container, client = make_container()
    output = frame(1, b"html\n")
    client.exec_output = output
    client.exec_states = [{"Running": True}, {"Running": False, "ExitCode": 3}]
    code, reader = container.exec(["ls", "/usr/share/nginx"])
    assert code == 3
    assert reader.read() == output
    assert ("exec_create", CONTAINER_ID, ["ls", "/usr/share/nginx"]) in client.calls
    assert sum(1 for call in client.calls if call[0] == "exec_inspect") == 2


def test_copy_to_container_builds_tar():
    container, client = make_container()
    container.copy_to_container(b"echo hi", "/scripts/hello_copy.sh", 700)
    [(path, data)] = client.copied
    assert path == "/scripts"
    with tarfile.open(fileobj=io.BytesIO(data)) as archive:
        [member] = archive.getmembers()
        assert member.name == "hello_copy.sh"
        assert member.mode == 700
        assert archive.extractfile(member).read() == b"echo hi"


def test_copy_file_to_container_reads_host_file(tmp_path):
    host_file = tmp_path / "hello.sh"
    host_file.write_bytes(b"echo done")
    container, client = make_container()
    container.copy_file_to_container(str(host_file), "/hello_copy.sh", 0o755)
    [(path, data)] = client.copied
    assert path == "/"
    with tarfile.open(fileobj=io.BytesIO(data)) as archive:
        assert archive.extractfile("hello_copy.sh").read() == b"echo done"


def test_copy_file_to_container_missing_file(tmp_path):
    container, _ = make_container()
    with pytest.raises(FileNotFoundError):
        container.copy_file_to_container(str(tmp_path / "missing"), "/x", 0o644)


def test_copy_dir_to_container(tmp_path):
    source = tmp_path / "testresources"
    (source / "nested").mkdir(parents=True)
    (source / "a.txt").write_bytes(b"alpha")
    (source / "nested" / "b.txt").write_bytes(b"beta")
    container, client = make_container()
    container.copy_dir_to_container(str(source), "/tmp/testresources", 0o700)
    [(path, data)] = client.copied
    assert path == "/tmp"
    with tarfile.open(fileobj=io.BytesIO(data)) as archive:
        names = set(archive.getnames())
        assert {"testresources", "testresources/a.txt", "testresources/nested/b.txt"} <= names
        assert archive.extractfile("testresources/nested/b.txt").read() == b"beta"


def test_copy_file_to_container_with_directory_copies_dir(tmp_path):
    source = tmp_path / "data"
    source.mkdir()
    (source / "f.txt").write_bytes(b"content")
    container, client = make_container()
    container.copy_file_to_container(str(source), "/tmp/data", 0o700)
    [(path, data)] = client.copied
    assert path == "/tmp"
    with tarfile.open(fileobj=io.BytesIO(data)) as archive:
        assert archive.extractfile("data/f.txt").read() == b"content"


def test_copy_dir_to_container_rejects_file(tmp_path):
    host_file = tmp_path / "Dockerfile"
    host_file.write_text("FROM alpine")
    container, _ = make_container()
    with pytest.raises(NotADirectoryError):
        container.copy_dir_to_container(str(host_file), "/tmp/Dockerfile", 0o700)


def test_copy_dir_to_container_missing_dir(tmp_path):
    container, _ = make_container()
    with pytest.raises(FileNotFoundError):
        container.copy_dir_to_container(str(tmp_path / "nope"), "/tmp/nope", 0o700)


def _archive_with(name, content):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        info = tarfile.TarInfo(name)
        info.size = len(content)
        archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def test_copy_file_from_container():
    container, client = make_container()
    client.archive = _archive_with("hello_copy.sh", b"echo hello")
    assert container.copy_file_from_container("/hello_copy.sh").read() == b"echo hello"


def test_copy_empty_file_from_container():
    container, client = make_container()
    client.archive = _archive_with("empty.sh", b"")
    assert container.copy_file_from_container("/empty.sh").read() == b""


def test_log_producer_feeds_consumers():
    container, client = make_container()
    client.follow_payloads = [frame(1, b"out") + frame(2, b"err") + frame(1, b"")]
    received = []
    done = threading.Event()

    def consumer(log):
        received.append(log)
        if len(received) == 2:
            done.set()

    container.follow_output(consumer)
    container.start_log_producer()
    assert done.wait(5)
    container.stop_log_producer()
    assert received == [Log(STDOUT_LOG, b"out"), Log(STDERR_LOG, b"err")]


def test_log_producer_treats_unknown_type_as_stdout():
    container, client = make_container()
    client.follow_payloads = [frame(3, b"odd")]
    received = []
    done = threading.Event()

    def consumer(log):
        received.append(log)
        done.set()

    container.follow_output(consumer)
    container.start_log_producer()
    assert done.wait(5)
    container.stop_log_producer()
    assert received == [Log(STDOUT_LOG, b"odd")]


def test_network_remove():
    client = FakeClient()
    signals = []
    network = DockerNetwork(
        id="net-1",
        driver="bridge",
        name="new-network",
        provider=FakeProvider(client),
        termination_signal=lambda: signals.append(True),
    )
    network.remove()
    assert ("network_remove", "net-1") in client.calls
    assert signals == [True]