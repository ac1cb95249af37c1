"""Tests for image_ref.py - build context resolution."""

import pytest

from errors import ConfigurationError, InvalidCommitIdentifier, MissingRegistryConfig
from image_ref import ImageReference, resolve_image_reference


class TestResolveImageReference:
    """Tests for resolve_image_reference()."""

    def test_serializes_host_path_tag(self):
        ref = resolve_image_reference('registry.example.com:8443', 'example03', 'abc1234')
        assert str(ref) == 'registry.example.com:8443/example03:abc1234'
        assert ref.tag == 'abc1234'
        assert ref.repository == 'registry.example.com:8443/example03'

    def test_full_sha_accepted(self):
        sha = '0123456789abcdef0123456789abcdef01234567'
        ref = resolve_image_reference('registry.example.com', 'team/app', sha)
        assert ref.tag == sha

    def test_sha256_object_id_accepted(self):
        sha = 'a' * 64
        assert resolve_image_reference('registry.example.com', 'app', sha).tag == sha

    def test_nested_project_path(self):
        ref = resolve_image_reference('ghcr.io', 'org/team/service-api', 'deadbee')
        assert str(ref) == 'ghcr.io/org/team/service-api:deadbee'

    def test_strips_whitespace_and_slashes(self):
        ref = resolve_image_reference(' registry.example.com ', '/example03/', ' abc1234\n')
        assert str(ref) == 'registry.example.com/example03:abc1234'

    @pytest.mark.parametrize('commit_id', ['', 'abc12', 'ABC1234', 'abc123z', 'a' * 41, 'main', 'abc 1234'])
    def test_rejects_malformed_commit_id(self, commit_id):
        with pytest.raises(InvalidCommitIdentifier) as exc_info:
            resolve_image_reference('registry.example.com', 'example03', commit_id)
        assert exc_info.value.exit_code == 1

    def test_missing_registry_host(self):
        with pytest.raises(MissingRegistryConfig) as exc_info:
            resolve_image_reference('', 'example03', 'abc1234')
        assert 'REGISTRY_HOST' in exc_info.value.message

    @pytest.mark.parametrize('host', ['https://registry.example.com', 'registry.example.com/path',
                                      'registry example.com', 'registry.example.com:port'])
    def test_malformed_registry_host(self, host):
        with pytest.raises(MissingRegistryConfig):
            resolve_image_reference(host, 'example03', 'abc1234')

    def test_missing_project_path(self):
        with pytest.raises(MissingRegistryConfig) as exc_info:
            resolve_image_reference('registry.example.com', '  ', 'abc1234')
        assert 'PROJECT_PATH' in exc_info.value.message

    @pytest.mark.parametrize('path', ['Example03', 'team//app', 'app:latest', 'app-'])
    def test_malformed_project_path(self, path):
        with pytest.raises(MissingRegistryConfig):
            resolve_image_reference('registry.example.com', path, 'abc1234')

    def test_errors_are_configuration_errors(self):
        with pytest.raises(ConfigurationError):
            resolve_image_reference('', '', '')


class TestImageReferenceParse:
    """Tests for ImageReference.parse()."""

    def test_port_not_mistaken_for_tag(self):
        ref = ImageReference.parse('registry.example.com:8443/example03:old999')
        assert ref == ImageReference('registry.example.com:8443', 'example03', 'old999')

    def test_nested_path(self):
        ref = ImageReference.parse('ghcr.io/org/app:v1.2.3')
        assert ref.project_path == 'org/app'
        assert ref.tag == 'v1.2.3'

    def test_round_trips_through_str(self):
        value = 'registry.example.com:8443/example03:abc1234'
        assert str(ImageReference.parse(value)) == value

    @pytest.mark.parametrize('value', ['nginx', 'registry.example.com:8443/example03',
                                       'registry.example.com/app@sha256:' + 'a' * 64])
    def test_rejects_unparseable(self, value):
        with pytest.raises(ValueError):
            ImageReference.parse(value)
