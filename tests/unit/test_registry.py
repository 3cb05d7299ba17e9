# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for the registry module.
"""
import base64
import io
import json
from urllib.error import HTTPError, URLError

import pytest

from m2k.errors import ImageNotFoundError, RegistryLookupError
from m2k.REGISTRY import registry_client
from m2k.REGISTRY.image_index import LocalImageIndex
from m2k.REGISTRY.image_reference import ImageReference
from m2k.REGISTRY.registry_client import RegistryClient
from m2k.RUNNERS.command_runner import CommandResult

from conftest import ScriptedRunner

DIGEST = "sha256:" + "b" * 64


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_simple_name(self):
        ref = ImageReference.parse("nginx")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/nginx"
        assert ref.tag == "latest"
        assert not ref.is_resolved

    def test_parse_private_registry_with_port(self):
        ref = ImageReference.parse("registry.local:5000/team/api:dev")
        assert ref.registry == "registry.local:5000"
        assert ref.repository == "team/api"
        assert ref.tag == "dev"

    def test_parse_port_without_tag(self):
        ref = ImageReference.parse("localhost:5000/api")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "api"
        assert ref.tag == "latest"

    def test_parse_with_digest(self):
        ref = ImageReference.parse(f"gcr.io/project/api@{DIGEST}")
        assert ref.digest == DIGEST
        assert ref.tag is None
        assert ref.is_resolved

    def test_with_digest_keeps_tag(self):
        ref = ImageReference.parse("registry.local/team/api:dev").with_digest(DIGEST)
        assert ref.tagged_name == "registry.local/team/api:dev"
        assert ref.full_name == f"registry.local/team/api@{DIGEST}"

    def test_image_id_is_not_pinned_into_the_name(self):
        ref = ImageReference.parse("api:dev").with_image_id(DIGEST)
        assert ref.digest == DIGEST
        assert ref.full_name == "docker.io/library/api:dev"
        assert ref.display_name == "api:dev"
        assert ref.with_digest(DIGEST).full_name == f"docker.io/library/api@{DIGEST}"

    def test_local_reference_is_the_image_id(self):
        ref = ImageReference.local("worker", DIGEST)
        assert ref.is_local
        assert ref.full_name == DIGEST

    def test_registry_url(self):
        assert ImageReference.parse("nginx").registry_url == "https://registry-1.docker.io"
        assert ImageReference.parse("localhost:5000/api").registry_url == "http://localhost:5000"
        assert ImageReference.parse("gcr.io/project/image").registry_url == "https://gcr.io"

    def test_empty_reference_raises(self):
        with pytest.raises(ValueError):
            ImageReference.parse("  ")

    def test_str_representation(self):
        assert str(ImageReference.parse("nginx:1.21")) == "nginx:1.21"


class FakeResponse:
    def __init__(self, headers=None, body=b""):
        self.headers = headers or {}
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def http_error(url, code, headers=None):
    return HTTPError(url, code, "error", headers or {}, io.BytesIO(b""))


class TestRegistryClient:
    """Tests for digest lookups over the registry HTTP API."""

    URL = "https://registry.local/v2/team/api/manifests/dev"

    def test_head_returns_digest(self, monkeypatch):
        requests = []

        def fake_urlopen(request, timeout=None):
            requests.append(request)
            return FakeResponse({"Docker-Content-Digest": DIGEST})

        monkeypatch.setattr(registry_client, "urlopen", fake_urlopen)
        assert RegistryClient().resolve_digest("registry.local/team/api:dev") == DIGEST
        assert requests[0].get_method() == "HEAD"
        assert requests[0].full_url == self.URL
        assert "manifest" in requests[0].get_header("Accept")

    def test_not_found(self, monkeypatch):
        def fake_urlopen(request, timeout=None):
            raise http_error(request.full_url, 404)

        monkeypatch.setattr(registry_client, "urlopen", fake_urlopen)
        with pytest.raises(ImageNotFoundError):
            RegistryClient().resolve_digest("registry.local/team/api:dev")

    def test_get_fallback_hashes_body(self, monkeypatch):
        body = json.dumps({"schemaVersion": 2}).encode()
        answers = [FakeResponse(), FakeResponse(body=body)]
        monkeypatch.setattr(registry_client, "urlopen", lambda request, timeout=None: answers.pop(0))

        digest = RegistryClient().resolve_digest("registry.local/team/api:dev")
        assert digest.startswith("sha256:")
        assert len(digest) == len("sha256:") + 64

    def test_transient_errors_are_retried(self, monkeypatch):
        answers = [URLError("connection reset"), FakeResponse({"Docker-Content-Digest": DIGEST})]

        def fake_urlopen(request, timeout=None):
            answer = answers.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer

        monkeypatch.setattr(registry_client, "urlopen", fake_urlopen)
        assert RegistryClient(max_attempts=2).resolve_digest("registry.local/team/api:dev") == DIGEST

    def test_persistent_outage_is_a_lookup_error(self, monkeypatch):
        def fake_urlopen(request, timeout=None):
            raise http_error(request.full_url, 503)

        monkeypatch.setattr(registry_client, "urlopen", fake_urlopen)
        with pytest.raises(RegistryLookupError) as excinfo:
            RegistryClient(max_attempts=2).resolve_digest("registry.local/team/api:dev")
        assert not isinstance(excinfo.value, LookupError)

    def test_forbidden_is_not_retried(self, monkeypatch):
        calls = []

        def fake_urlopen(request, timeout=None):
            calls.append(request)
            raise http_error(request.full_url, 403)

        monkeypatch.setattr(registry_client, "urlopen", fake_urlopen)
        with pytest.raises(RegistryLookupError):
            RegistryClient(max_attempts=3).resolve_digest("registry.local/team/api:dev")
        assert len(calls) == 1

    def test_bearer_token_negotiation(self, monkeypatch):
        challenge = 'Bearer realm="https://auth.local/token",service="registry.local"'
        requests = []
        answers = [
            http_error(self.URL, 401, {"WWW-Authenticate": challenge}),
            FakeResponse(body=json.dumps({"token": "abc"}).encode()),
            FakeResponse({"Docker-Content-Digest": DIGEST}),
        ]

        def fake_urlopen(request, timeout=None):
            requests.append(request)
            answer = answers.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer

        monkeypatch.setattr(registry_client, "urlopen", fake_urlopen)
        client = RegistryClient()
        client.set_credentials("registry.local", "dev", "secret")

        assert client.resolve_digest("registry.local/team/api:dev") == DIGEST
        token_url = requests[1].full_url
        assert token_url.startswith("https://auth.local/token?")
        assert "scope=repository%3Ateam%2Fapi%3Apull" in token_url
        assert requests[1].get_header("Authorization").startswith("Basic ")
        assert requests[2].get_header("Authorization") == "Bearer abc"

    def test_register_waits_for_visibility(self, monkeypatch):
        answers = [http_error(self.URL, 404), FakeResponse({"Docker-Content-Digest": DIGEST})]

        def fake_urlopen(request, timeout=None):
            answer = answers.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer

        monkeypatch.setattr(registry_client, "urlopen", fake_urlopen)
        RegistryClient(visibility_timeout=5, poll_interval=0.01).register("registry.local/team/api:dev", [], DIGEST)
        assert answers == []

    def test_register_times_out(self, monkeypatch):
        def fake_urlopen(request, timeout=None):
            raise http_error(request.full_url, 404)

        monkeypatch.setattr(registry_client, "urlopen", fake_urlopen)
        client = RegistryClient(visibility_timeout=0.05, poll_interval=0.01)
        with pytest.raises(RegistryLookupError):
            client.register("registry.local/team/api:dev", [])


    def test_docker_config_credentials(self, tmp_path):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"auths": {
            "registry.local": {"auth": base64.b64encode(b"dev:secret").decode()},
            "https://index.docker.io/v1/": {"username": "hub", "password": "pw"},
            "ghcr.io": {"auth": "not base64!"},
        }}))
        client = RegistryClient()
        client.set_credentials("registry.local", "explicit", "kept")

        assert client.load_docker_config(str(config)) == 1
        assert client._credentials["registry.local"].username == "explicit"
        assert client._credentials["docker.io"].password == "pw"
        assert "ghcr.io" not in client._credentials

    def test_missing_docker_config_loads_nothing(self, tmp_path):
        assert RegistryClient().load_docker_config(str(tmp_path / "absent.json")) == 0

    def test_registry_host(self):
        assert registry_client.registry_host("registry.local:5000/team") == "registry.local:5000"
        assert registry_client.registry_host("https://index.docker.io/v1/") == "docker.io"

class TestLocalImageIndex:
    """Tests for the on-disk image index."""

    def test_register_then_resolve(self, tmp_path):
        index = LocalImageIndex(str(tmp_path / "index.json"))
        with pytest.raises(ImageNotFoundError):
            index.resolve_digest("api:dev")

        index.register("api:dev", ["VERSION=1"], DIGEST)

        assert index.resolve_digest("docker.io/library/api:dev") == DIGEST
        entry = index.list_images()[0]
        assert entry.reference == "docker.io/library/api:dev"
        assert entry.build_args == ["VERSION=1"]

    def test_visible_to_a_new_instance(self, tmp_path):
        path = str(tmp_path / "images" / "index.json")
        LocalImageIndex(path).register("api:dev", [])
        assert LocalImageIndex(path).resolve_digest("api:dev").startswith("sha256:")

    def test_derived_digest_depends_on_build_args(self, tmp_path):
        index = LocalImageIndex(str(tmp_path / "index.json"))
        index.register("api:dev", ["VERSION=1"])
        first = index.resolve_digest("api:dev")
        index.register("api:dev", ["VERSION=2"])
        assert index.resolve_digest("api:dev") != first

    def test_remove(self, tmp_path):
        index = LocalImageIndex(str(tmp_path / "index.json"))
        index.register("api:dev", [], DIGEST)
        assert index.remove("api:dev")
        assert not index.remove("api:dev")
        assert index.list_images() == []

    def test_corrupt_index_is_not_a_miss(self, tmp_path):
        path = tmp_path / "index.json"
        path.write_text("{not json")
        with pytest.raises(RegistryLookupError):
            LocalImageIndex(str(path)).resolve_digest("api:dev")

    def test_hit_is_confirmed_with_the_daemon(self, tmp_path):
        runner = ScriptedRunner({("docker", "image", "inspect"): CommandResult([], 0, DIGEST + "\n")})
        index = LocalImageIndex(str(tmp_path / "index.json"), runner=runner)
        index.register("api:dev", [], DIGEST)

        assert index.resolve_digest("api:dev") == DIGEST
        assert runner.commands == [["docker", "image", "inspect", "--format", "{{.Id}}", "docker.io/library/api:dev"]]

    def test_image_removed_from_daemon_is_a_miss(self, tmp_path):
        runner = ScriptedRunner({
            ("docker", "image", "inspect"): CommandResult([], 1, "", "Error: No such image: api:dev"),
        })
        index = LocalImageIndex(str(tmp_path / "index.json"), runner=runner)
        index.register("api:dev", [], DIGEST)

        with pytest.raises(ImageNotFoundError):
            index.resolve_digest("api:dev")

    def test_unreachable_daemon_is_not_a_miss(self, tmp_path):
        runner = ScriptedRunner({
            ("docker", "image", "inspect"): CommandResult(
                [], 1, "", "Cannot connect to the Docker daemon at unix:///var/run/docker.sock"),
        })
        index = LocalImageIndex(str(tmp_path / "index.json"), runner=runner)
        index.register("api:dev", [], DIGEST)

        with pytest.raises(RegistryLookupError) as excinfo:
            index.resolve_digest("api:dev")
        assert "Cannot connect" in str(excinfo.value)

    def test_miss_does_not_ask_the_daemon(self, tmp_path):
        runner = ScriptedRunner()
        with pytest.raises(ImageNotFoundError):
            LocalImageIndex(str(tmp_path / "index.json"), runner=runner).resolve_digest("api:dev")
        assert runner.calls == []
