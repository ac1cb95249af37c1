"""Tests for CLI module."""

import json
import logging

import pytest

from cli import dispatch_image, dispatch_sync, main
from config import ENV_VARS, SETTINGS_FILE_ENV
from conftest import MANIFEST_PATH, remote_file, remote_head, remote_subjects


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep CI variables of the machine running the tests out of the config."""
    for env_names in ENV_VARS.values():
        for name in env_names:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv(SETTINGS_FILE_ENV, raising=False)
    root_logger = logging.getLogger()
    handlers, level = root_logger.handlers[:], root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


def _run_args(remote, *extra):
    return [
        'sync', 'run',
        '--registry-host', 'registry.example.com:8443',
        '--project-path', 'example03',
        '--commit-id', 'abc1234',
        '--repo-url', str(remote),
        '--file', MANIFEST_PATH,
        '--selector', 'api',
        *extra,
    ]


class TestMain:
    """Tests for top-level dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert main([]) == 0
        out = capsys.readouterr().out
        assert 'Usage: manifest-sync <noun> <action>' in out
        assert 'sync' in out
        assert 'image' in out

    def test_version(self, capsys):
        assert main(['--version']) == 0
        assert capsys.readouterr().out.startswith('manifest-sync ')

    def test_unknown_noun(self, capsys):
        assert main(['deploy']) == 1
        assert "Unknown command 'deploy'" in capsys.readouterr().out

    def test_sync_without_action(self, capsys):
        assert dispatch_sync([]) == 1
        assert 'Usage: manifest-sync sync <action>' in capsys.readouterr().out

    def test_unknown_sync_action(self, capsys):
        assert dispatch_sync(['apply']) == 1
        assert "Unknown sync action 'apply'" in capsys.readouterr().out

    def test_unknown_image_action(self):
        assert dispatch_image(['push']) == 1


class TestImageResolve:
    """Tests for 'image resolve'."""

    def test_prints_reference(self, capsys):
        rc = main(['image', 'resolve', '--registry-host', 'registry.example.com:8443',
                   '--project-path', 'example03', '--commit-id', 'abc1234'])
        assert rc == 0
        assert capsys.readouterr().out.strip() == 'registry.example.com:8443/example03:abc1234'

    def test_reads_environment(self, capsys, monkeypatch):
        monkeypatch.setenv('REGISTRY_HOST', 'ghcr.io')
        monkeypatch.setenv('CI_PROJECT_NAME', 'example03')
        monkeypatch.setenv('CI_COMMIT_SHORT_SHA', 'def5678')
        assert main(['image', 'resolve']) == 0
        assert capsys.readouterr().out.strip() == 'ghcr.io/example03:def5678'

    def test_json_output(self, capsys):
        rc = main(['image', 'resolve', '--json-output', '--registry-host', 'ghcr.io',
                   '--project-path', 'org/app', '--commit-id', 'abc1234'])
        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert data == {
            'registry_host': 'ghcr.io',
            'project_path': 'org/app',
            'tag': 'abc1234',
            'image': 'ghcr.io/org/app:abc1234',
        }

    def test_invalid_commit_id(self, capsys):
        rc = main(['image', 'resolve', '--registry-host', 'ghcr.io',
                   '--project-path', 'app', '--commit-id', 'latest'])
        assert rc == 1
        err = capsys.readouterr().err
        assert 'configuration error (E102)' in err
        assert "'latest'" in err


@pytest.mark.requires_git
class TestSyncRun:
    """Tests for 'sync run' against a local bare repository."""

    def test_deploys(self, manifest_remote, capsys):
        rc = main(_run_args(manifest_remote, '--skip-preflight'))

        assert rc == 0
        out = capsys.readouterr().out
        assert 'Deployed registry.example.com:8443/example03:abc1234 (replacing old999, ' in out
        assert remote_subjects(manifest_remote)[0] == 'Deploy abc1234'
        assert 'example03:abc1234' in remote_file(manifest_remote)

    def test_preflight_runs_for_local_remote(self, manifest_remote):
        assert main(_run_args(manifest_remote)) == 0

    def test_second_run_reports_noop(self, manifest_remote, capsys):
        main(_run_args(manifest_remote, '--skip-preflight'))
        capsys.readouterr()

        assert main(_run_args(manifest_remote, '--skip-preflight')) == 0
        assert 'Already deployed' in capsys.readouterr().out

    def test_dry_run(self, manifest_remote, capsys):
        head = remote_head(manifest_remote)
        assert main(_run_args(manifest_remote, '--dry-run')) == 0

        out = capsys.readouterr().out
        assert 'Dry run: would deploy registry.example.com:8443/example03:abc1234' in out
        assert '+          image: "registry.example.com:8443/example03:abc1234"' in out
        assert remote_head(manifest_remote) == head

    def test_json_output(self, manifest_remote, capsys):
        rc = main(_run_args(manifest_remote, '--skip-preflight', '--json-output'))

        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert data['status'] == 'deployed'
        assert data['exit_code'] == 0
        assert data['commits_created'] == 1
        assert data['previous_tag'] == 'old999'
        assert data['revision'] == remote_head(manifest_remote)
        assert data['attempts'][0]['result'] == 'success'

    def test_selector_not_found_exit_code(self, manifest_remote, capsys):
        args = _run_args(manifest_remote, '--skip-preflight')
        args[args.index('api')] = 'worker'

        assert main(args) == 4
        err = capsys.readouterr().err
        assert 'validation error (E601)' in err
        assert f'file:       {MANIFEST_PATH}' in err
        assert 'selector:   worker' in err

    def test_branch_not_found_exit_code(self, manifest_remote, capsys):
        assert main(_run_args(manifest_remote, '--skip-preflight', '--branch', 'release')) == 1
        err = capsys.readouterr().err
        assert 'configuration error (E103)' in err
        assert 'branch:     release' in err

    def test_json_output_on_failure(self, manifest_remote, capsys):
        args = _run_args(manifest_remote, '--skip-preflight', '--json-output', '--selector', 'Deployment/x/api')

        assert main(args) == 4
        data = json.loads(capsys.readouterr().out)
        assert data['status'] == 'failed'
        assert data['error']['code'] == 'E601'

    def test_missing_repo_url(self, capsys):
        rc = main(['sync', 'run', '--commit-id', 'abc1234', '--registry-host', 'ghcr.io',
                   '--project-path', 'app', '--file', MANIFEST_PATH, '--selector', 'api'])
        assert rc == 1
        assert 'MANIFEST_REPO_URL' in capsys.readouterr().err

    def test_bad_settings_file(self, manifest_remote, tmp_path, capsys):
        settings = tmp_path / 'sync.yaml'
        settings.write_text('credential: hunter2\n')

        assert main(_run_args(manifest_remote, '--config', str(settings))) == 1
        err = capsys.readouterr().err
        assert 'contains secrets' in err
        assert 'hunter2' not in err


@pytest.mark.requires_git
class TestSyncPreflight:
    """Tests for 'sync preflight'."""

    def test_ready(self, manifest_remote, capsys):
        rc = main(['sync', 'preflight', '--repo-url', str(manifest_remote),
                   '--file', MANIFEST_PATH, '--selector', 'api'])
        assert rc == 0
        assert '✓ ready' in capsys.readouterr().out

    def test_json_output(self, manifest_remote, capsys):
        rc = main(['sync', 'preflight', '--json-output', '--repo-url', str(manifest_remote),
                   '--file', MANIFEST_PATH, '--selector', 'api'])
        assert rc == 0
        assert json.loads(capsys.readouterr().out)['ready'] is True
