import io
import tarfile

import pytest

from dockertestkit.mounts import ContainerMount, DockerBindMountSource
from dockertestkit.request import (
    ContainerFile,
    ContainerRequest,
    DuplicateMountTargetError,
    FromDockerfile,
    ReaperOptions,
    RequestValidationError,
    with_image_name,
    with_registry_credentials,
)


def bind(host_path, target):
    return ContainerMount(source=DockerBindMountSource(host_path=host_path), target=target)


@pytest.mark.parametrize(
    "request_, expected",
    [
        (
            ContainerRequest(from_dockerfile=FromDockerfile(context="."), image="redis:latest"),
            "you cannot specify both an Image and Context in a ContainerRequest",
        ),
        (ContainerRequest(image="redis:latest"), None),
        (ContainerRequest(from_dockerfile=FromDockerfile(context=".")), None),
        (
            ContainerRequest(
                image="redis:latest", mounts=[bind("/data", "/srv"), bind("/data", "/data")]
            ),
            None,
        ),
        (
            ContainerRequest(
                image="redis:latest", mounts=[bind("/srv", "/data"), bind("/data", "/data")]
            ),
            "duplicate mount target detected: /data",
        ),
        (ContainerRequest(), "you must specify either a build context or an image"),
    ],
    ids=[
        "cannot set both context and image",
        "can set image without context",
        "can set context without image",
        "can mount same source to multiple targets",
        "cannot mount multiple sources to same target",
        "nothing specified",
    ],
)
def test_container_validation(request_, expected):
    if expected is None:
        assert request_.validate() is None
    else:
        with pytest.raises(RequestValidationError) as info:
            request_.validate()
        assert str(info.value) == expected


def test_context_archive_alone_is_valid():
    request = ContainerRequest(from_dockerfile=FromDockerfile(context_archive=io.BytesIO()))
    assert request.validate() is None


def test_duplicate_mount_error_carries_target():
    request = ContainerRequest(image="redis:latest", mounts=[bind("/a", "/x"), bind("/b", "/x")])
    with pytest.raises(DuplicateMountTargetError) as info:
        request.validate()
    assert info.value.target == "/x"
    assert isinstance(info.value, ValueError)


@pytest.mark.parametrize(
    "request_, expected",
    [
        (ContainerRequest(), "Dockerfile"),
        (ContainerRequest(from_dockerfile=FromDockerfile()), "Dockerfile"),
        (
            ContainerRequest(from_dockerfile=FromDockerfile(dockerfile="CustomDockerfile")),
            "CustomDockerfile",
        ),
    ],
)
def test_get_dockerfile(request_, expected):
    assert request_.get_dockerfile() == expected


def test_get_auth_configs_defaults_to_none():
    assert ContainerRequest(from_dockerfile=FromDockerfile()).get_auth_configs() is None


def test_get_auth_configs_returns_credentials():
    configs = {"https://myregistry.com/": {"username": "username", "password": "password"}}
    request = ContainerRequest(from_dockerfile=FromDockerfile(auth_configs=configs))
    assert request.get_auth_configs() == {
        "https://myregistry.com/": {"username": "username", "password": "password"}
    }


def test_get_build_args():
    value = "build args value"
    request = ContainerRequest(from_dockerfile=FromDockerfile(build_args={"FOO": value}))
    assert request.get_build_args() == {"FOO": "build args value"}


def test_should_build_image():
    assert ContainerRequest(from_dockerfile=FromDockerfile(context=".")).should_build_image()
    archive_request = ContainerRequest(
        from_dockerfile=FromDockerfile(context_archive=io.BytesIO())
    )
    assert archive_request.should_build_image()
    assert not ContainerRequest(image="redis:latest").should_build_image()


def test_should_print_build_log():
    assert ContainerRequest(
        from_dockerfile=FromDockerfile(print_build_log=True)
    ).should_print_build_log()
    assert not ContainerRequest().should_print_build_log()


def test_get_context_returns_archive_unchanged():
    archive = io.BytesIO(b"tar bytes")
    request = ContainerRequest(from_dockerfile=FromDockerfile(context_archive=archive))
    assert request.get_context() is archive


def test_get_context_tars_directory(tmp_path):
    (tmp_path / "Dockerfile").write_text("FROM docker.io/alpine\n")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "say_hi.sh").write_text("echo hi\n")

    request = ContainerRequest(from_dockerfile=FromDockerfile(context=str(tmp_path)))
    with tarfile.open(fileobj=request.get_context(), mode="r") as archive:
        names = set(archive.getnames())
        dockerfile = archive.extractfile("Dockerfile").read()
        script = archive.extractfile("sub/say_hi.sh").read()

    assert names == {"Dockerfile", "sub", "sub/say_hi.sh"}
    assert dockerfile == b"FROM docker.io/alpine\n"
    assert script == b"echo hi\n"


def test_get_context_missing_directory(tmp_path):
    request = ContainerRequest(from_dockerfile=FromDockerfile(context=str(tmp_path / "missing")))
    with pytest.raises(FileNotFoundError):
        request.get_context()


def test_reaper_options_are_applied():
    options = ReaperOptions(image_name="original")
    for option in [with_image_name("custom/reaper:1"), with_registry_credentials("token")]:
        option(options)
    assert options == ReaperOptions(image_name="custom/reaper:1", registry_credentials="token")


def test_request_defaults_are_independent():
    first = ContainerRequest(image="a")
    second = ContainerRequest(image="b")
    first.networks.append("bridge")
    first.files.append(ContainerFile("./hello.sh", "/hello_copy.sh", 700))
    assert second.networks == []
    assert second.files == []