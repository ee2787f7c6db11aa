# dockertestkit

Create, start and inspect short-lived Docker containers from Python test
suites. The package talks to the Docker Engine API directly, over a Unix
socket or a TCP host. It needs nothing outside the standard library.

## Installing

```
pip install dockertestkit
```

To run the test suite:

```
pip install "dockertestkit[test]"
pytest
```

## Modules

| module                   | what it holds                                                      |
|--------------------------|--------------------------------------------------------------------|
| `dockertestkit.config`   | `ContainersConfig`, `load_config()`, `parse_properties()`          |
| `dockertestkit.mounts`   | `MountType`, `ContainerMount`, the mount sources, `map_to_docker_mounts()` |
| `dockertestkit.ports`    | `Port`, `PortBinding`, `parse_port_specs()`                        |
| `dockertestkit.request`  | `ContainerRequest`, `FromDockerfile`, `ContainerFile`, reaper options, validation errors |
| `dockertestkit.client`   | `DockerClient`, `new_docker_client()`, `DockerAPIError`, `NotFoundError` |
| `dockertestkit.container`| `DockerContainer`, `DockerNetwork`, `Log`, `demultiplex()`         |
| `dockertestkit.provider` | `DockerProvider`, `ProviderType`, `ProviderOptions`, `new_docker_provider()` |

## Configuration

`dockertestkit.config.load_config()` looks in the home directory (`HOME`, or
`USERPROFILE` on Windows). If a file named `.testcontainers.properties` is
there, it reads it. The result is a `ContainersConfig` with these fields:

| key                         | field             | meaning                                   |
|-----------------------------|-------------------|-------------------------------------------|
| `docker.host`               | `host`            | Docker daemon address                     |
| `docker.tls.verify`         | `tls_verify`      | `1` to use TLS with the files below       |
| `docker.cert.path`          | `cert_path`       | directory holding `ca.pem`, `cert.pem`, `key.pem` |
| `ryuk.container.privileged` | `ryuk_privileged` | `true` or `false`                         |

Later keys override earlier ones. Some problems give back an empty
configuration instead of raising:

- the file is missing or unreadable;
- `docker.tls.verify` is not an integer;
- the boolean value is not recognised.

When a value cannot be decoded, a message is also printed.

The environment variable `TESTCONTAINERS_RYUK_CONTAINER_PRIVILEGED`, when it
is set and not empty, overrides `ryuk_privileged`: only `true` turns it on.

`parse_properties(text)` is the properties-file parser on its own. It handles
comments, `=`/`:`/whitespace separators, escapes and line continuations.

## Connecting to the daemon

`new_docker_client()` returns `(client, host, config)`. It picks the daemon
address in this order:

1. `docker.host` from the properties file. When `docker.tls.verify` is `1`,
   the certificates in `docker.cert.path` are used.
2. The `DOCKER_HOST` environment variable.
3. `unix:///var/run/docker.sock`.

When `DOCKER_CERT_PATH` is set, its certificates are used as well.
`DOCKER_TLS_VERIFY` decides whether the server is verified.

Each request sends an `x-tc-sid` header carrying a session id. The id is
fixed for the life of the process.

`DockerClient` covers these operations:

- containers: create, start, stop, remove, inspect, list, logs;
- exec: create, start, inspect;
- archive copies into and out of containers;
- images: build, pull, inspect, remove;
- networks: list, create, inspect, connect, remove.

It negotiates the API version with the daemon, up to 1.41. Errors raise
`DockerAPIError`, and a 404 raises its subclass `NotFoundError`. The
`unix`, `tcp`, `http` and `https` schemes are supported. An `npipe://` host
is accepted, but any request through it raises `DockerAPIError`.

## Describing a container

```python
from dockertestkit.request import ContainerRequest, FromDockerfile

req = ContainerRequest(
    image="docker.io/nginx:alpine",
    exposed_ports=["80/tcp"],
    env={"GREETING": "hello"},
)
req.validate()
```

`validate()` raises `RequestValidationError` in these cases:

- both an image and a build context are set;
- neither an image, a build context nor a context archive is set.

It raises `DuplicateMountTargetError`, a subclass, when two mounts share a
target.

To build an image from a Dockerfile instead of pulling one:

```python
req = ContainerRequest(from_dockerfile=FromDockerfile(context="./docker"))
req.get_dockerfile()      # "Dockerfile" unless overridden
req.should_build_image()  # True
req.get_context()         # the context directory as a tar stream
```

A ready-made tar archive can be given as `FromDockerfile(context_archive=...)`
in place of a directory.

Mounts are `dockertestkit.mounts.ContainerMount(source, target, read_only)`.
The available sources are:

- `DockerBindMountSource(host_path)`
- `DockerVolumeMountSource(name)`
- `DockerTmpfsMountSource()`

Each source takes optional Engine API options.

Port specs such as `"8080:80/tcp"`, `"127.0.0.1:8000-8001:80-81"` or `"53/udp"`
are parsed by `dockertestkit.ports.parse_port_specs`. It returns the exposed
ports and their host bindings. `Port` is a `str` with `port()` and `proto()`.

## Running a container

```python
from dockertestkit.provider import ProviderType

provider = ProviderType.DOCKER.get_provider()
container = provider.run_container(req)
try:
    url = container.port_endpoint("80/tcp", "http")
    exit_code, output = container.exec(["ls", "/usr/share/nginx"])
finally:
    container.terminate()
```

`ProviderType.PODMAN` works the same way, using `podman` as the bridge
network name.

`create_container` creates a container without starting it. It does the
following, in order:

1. Makes sure a default network exists. The bridge network is used if it is
   there; otherwise `reaper_default` is used, and created if missing.
2. Builds the image from the build context, or pulls the image if it is
   missing. It also pulls when `always_pull_image` is set, or when
   `image_platform` does not match the local image.
3. Attaches the container to every requested network.
4. Copies in the request's `files`.

Failed builds and pulls are retried with exponential backoff. A missing image
(`NotFoundError`) is not retried.

Other `DockerProvider` methods:

- `reuse_or_create_container` attaches to a running container with the
  requested name, if one exists.
- `find_container_by_name` looks up a container by name.
- `get_network` and `get_gateway_ip` inspect networks.
- `health` checks that the daemon answers.
- `daemon_host` gives the host on which ports are reported.

`TC_HOST` overrides the value of `daemon_host`.

`run_container` creates the container and then starts it. If starting fails,
the error it raises has the created container attached as `container`.

A `DockerContainer` has these methods:

- `mapped_port`, `ports`, `host`, `endpoint`, `port_endpoint`, `name` and
  `state` describe the container. When inspection fails after an earlier
  success, the error raised by `state` has the last known state attached as
  `last_known_state`.
- `networks`, `network_aliases`, `container_ip` and `container_ips` describe
  its networking.
- `logs()` returns the output written to stdout and stderr so far, with the
  stream headers removed.
- `exec(cmd)` returns `(exit_code, output)`. The output keeps Docker's
  multiplexed framing; pass it to `dockertestkit.container.demultiplex` to get
  `(stream_type, payload)` frames.
- `copy_to_container`, `copy_file_to_container` and `copy_dir_to_container`
  copy files in. `copy_file_from_container` copies a file out.
- `start`, `stop` and `terminate` control its lifetime. `terminate` also
  removes an image that was built for the container.

To follow logs as they arrive, register callables with
`follow_output(consumer)`, then call `start_log_producer()`. Each callable
receives `Log(log_type, content)` objects, where `log_type` is `"STDOUT"` or
`"STDERR"`. Call `stop_log_producer()` to stop.

## What the package does not do

- **No cleanup container.** Nothing removes containers and networks left
  behind when a test process dies. A provider only does such cleanup if it is
  built with `ProviderOptions(reaper_factory=...)`. The factory must return an
  object with `connect()` and `labels()`. Without one, the provider logs a
  warning each time it creates a container.
- **No wait strategies.** `ContainerRequest.waiting_for` accepts any object
  with a `wait_until_ready(container)` method, called by `start()`. None are
  included, such as waiting for a log line, a port or an HTTP answer.
- **No network creation on the provider.** Networks can be created with
  `DockerClient.network_create`. `DockerNetwork` only wraps an existing
  network for removal.
- **No Windows named pipes.** Requests to an `npipe://` host raise
  `DockerAPIError`.
- **No command-line interface.** The package is a library only.