"""Tests for CLI module.

Scenario execution is stubbed at cli.Orchestrator / cli.validate_readiness;
parameter commands run against the temporary site-config.
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import cli

PROD_SECRETS = {
    'PROD_PROJECT_ID': 'cicd-prod-xxxxxx',
    'PROD_REGION': 'us-central1',
    'PROD_FRONT_CIDR': '10.1.0.0/24',
    'PROD_BACK_CIDR': '11.1.0.0/24',
    'PROD_DMZ_CIDR': '12.1.0.0/24',
}


@pytest.fixture(autouse=True)
def site_env(site_config_dir, monkeypatch):
    """Point the CLI at the temporary site-config with no secrets set."""
    monkeypatch.setenv('VPC_DRIVER_SITE_CONFIG', str(site_config_dir))
    for prefix in ('DEV', 'PROD', 'STAGE'):
        for suffix in ('PROJECT_ID', 'REGION', 'FRONT_CIDR', 'BACK_CIDR', 'DMZ_CIDR'):
            monkeypatch.delenv(f'{prefix}_{suffix}', raising=False)
    return site_config_dir


@pytest.fixture
def prod_secrets(monkeypatch):
    for key, value in PROD_SECRETS.items():
        monkeypatch.setenv(key, value)
    return PROD_SECRETS


@pytest.fixture
def mock_orchestrator():
    """Orchestrator whose run() succeeds without executing phases."""
    with patch('cli.Orchestrator') as mock_class:
        instance = mock_class.return_value
        instance.context = {}
        instance.run.return_value = True
        instance.report.to_dict.return_value = {'scenario': 'network-apply', 'success': True}
        yield mock_class


class TestMain:
    """Tests for top-level dispatch."""

    def test_no_args_prints_usage(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, 'argv', ['run.sh'])
        assert cli.main() == 0
        out = capsys.readouterr().out
        assert 'Usage: ./run.sh <noun> <action> [options]' in out
        for noun in ('network', 'params', 'identity', 'scenario'):
            assert noun in out

    def test_unknown_command(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, 'argv', ['run.sh', 'vm'])
        assert cli.main() == 1
        assert "Unknown command 'vm'" in capsys.readouterr().out

    def test_version(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, 'argv', ['run.sh', '--version'])
        with patch('cli.get_version', return_value='v0.1.0'):
            assert cli.main() == 0
        assert 'vpc-driver v0.1.0' in capsys.readouterr().out


class TestDispatchNetwork:
    """Tests for 'network' noun dispatch."""

    def test_no_action_shows_usage(self, capsys):
        assert cli.dispatch_network([]) == 1
        assert 'Actions:' in capsys.readouterr().out

    def test_unknown_action(self, capsys):
        assert cli.dispatch_network(['upgrade']) == 1
        assert "Unknown network action 'upgrade'" in capsys.readouterr().out

    @pytest.mark.parametrize('action,scenario', list(cli.NETWORK_ACTIONS.items()))
    def test_action_maps_to_scenario(self, action, scenario):
        with patch('cli.run_scenario', return_value=0) as mock_run:
            assert cli.dispatch_network([action, '-E', 'dev']) == 0
        assert mock_run.call_args.args[0] == scenario
        assert mock_run.call_args.args[1] == ['-E', 'dev']


class TestRunScenario:
    """Tests for run_scenario() option handling."""

    def test_env_required(self, capsys):
        assert cli.run_scenario('network-plan', [], prog='run.sh network plan') == 1
        out = capsys.readouterr().out
        assert "--env is required" in out
        assert 'dev, prod, stage' in out

    def test_unknown_env(self, capsys):
        assert cli.run_scenario('network-plan', ['-E', 'qa'], prog='p') == 1
        assert "Environment 'qa' not found" in capsys.readouterr().out

    def test_list_phases(self, capsys):
        assert cli.run_scenario('network-apply', ['-E', 'dev', '--list-phases'], prog='p') == 0
        out = capsys.readouterr().out
        assert "Phases for scenario 'network-apply':" in out
        assert '  enable_apis: Enable required service APIs' in out

    def test_dry_run_skips_preflight_and_execution(self, tmp_path, capsys):
        with patch('cli.validate_readiness') as mock_ready:
            rc = cli.run_scenario('network-destroy', ['-E', 'dev', '--dry-run', '-r', str(tmp_path / 'r')], prog='p')
        assert rc == 0
        mock_ready.assert_not_called()
        out = capsys.readouterr().out
        assert 'DRY-RUN: network-destroy' in out
        assert not (tmp_path / 'r').exists()

    def test_preflight_failure_stops(self, mock_orchestrator, capsys):
        with patch('cli.validate_readiness', return_value=["Identity not configured for 'dev'"]):
            assert cli.run_scenario('network-plan', ['-E', 'dev'], prog='p') == 1
        out = capsys.readouterr().out
        assert 'Pre-flight validation failed' in out
        assert "✗ Identity not configured for 'dev'" in out
        mock_orchestrator.assert_not_called()

    def test_skip_passed_to_preflight_and_orchestrator(self, mock_orchestrator):
        with patch('cli.validate_readiness', return_value=[]) as mock_ready:
            rc = cli.run_scenario('network-plan', ['-E', 'dev', '--skip', 'authenticate'], prog='p')
        assert rc == 0
        assert mock_ready.call_args.kwargs['skip_phases'] == ['authenticate']
        assert mock_orchestrator.call_args.kwargs['skip_phases'] == ['authenticate']

    def test_params_from_secrets(self, mock_orchestrator):
        with patch('cli.validate_readiness', return_value=[]) as mock_ready:
            cli.run_scenario('network-plan', ['-E', 'dev', '--params-from-secrets'], prog='p')
        assert mock_ready.call_args.args[0].params_source == 'secrets'
        assert mock_orchestrator.call_args.kwargs['config'].params_source == 'secrets'
        assert mock_orchestrator.return_value.context['params_source'] == 'secrets'

    def test_failed_run_exit_code(self, mock_orchestrator):
        mock_orchestrator.return_value.run.return_value = False
        assert cli.run_scenario('network-plan', ['-E', 'dev', '--skip-preflight'], prog='p') == 1

    def test_destroy_asks_for_confirmation(self, mock_orchestrator, capsys):
        with patch('builtins.input', return_value='n') as mock_input:
            rc = cli.run_scenario('network-destroy', ['-E', 'dev', '--skip-preflight'], prog='p')
        assert rc == 1
        mock_input.assert_called_once()
        assert 'Aborted.' in capsys.readouterr().out
        mock_orchestrator.return_value.run.assert_not_called()

    def test_destroy_confirmed(self, mock_orchestrator):
        with patch('builtins.input', return_value='y'):
            assert cli.run_scenario('network-destroy', ['-E', 'dev', '--skip-preflight'], prog='p') == 0
        mock_orchestrator.return_value.run.assert_called_once()

    def test_yes_skips_prompt(self, mock_orchestrator):
        with patch('builtins.input') as mock_input:
            assert cli.run_scenario('network-destroy', ['-E', 'dev', '--skip-preflight', '--yes'], prog='p') == 0
        mock_input.assert_not_called()

    def test_apply_does_not_prompt(self, mock_orchestrator):
        with patch('builtins.input') as mock_input:
            cli.run_scenario('network-apply', ['-E', 'dev', '--skip-preflight'], prog='p')
        mock_input.assert_not_called()

    def test_json_output(self, mock_orchestrator, capsys):
        cli.run_scenario('network-apply', ['-E', 'dev', '--skip-preflight', '--json-output'], prog='p')
        data = json.loads(capsys.readouterr().out)
        assert data == {'scenario': 'network-apply', 'success': True}

    def test_context_file_round_trip(self, mock_orchestrator, tmp_path):
        context_file = tmp_path / 'ctx.json'
        context_file.write_text(json.dumps({'network_name': 'dev-vpc'}))
        instance = mock_orchestrator.return_value

        def run():
            instance.context['_access_token'] = 'ya29.secret'
            instance.context['verified_network'] = 'dev-vpc'
            return True
        instance.run.side_effect = run

        rc = cli.run_scenario('network-plan', ['-E', 'dev', '--skip-preflight', '-C', str(context_file)], prog='p')
        assert rc == 0
        saved = json.loads(context_file.read_text())
        assert saved == {'network_name': 'dev-vpc', 'verified_network': 'dev-vpc'}

    def test_invalid_context_file(self, mock_orchestrator, tmp_path, capsys):
        context_file = tmp_path / 'ctx.json'
        context_file.write_text('{not json')
        rc = cli.run_scenario('network-plan', ['-E', 'dev', '--skip-preflight', '-C', str(context_file)], prog='p')
        assert rc == 1
        assert 'Invalid JSON in context file' in capsys.readouterr().out

    def test_preflight_mode(self, capsys):
        with patch('cli.run_preflight_checks', return_value=(True, {})) as mock_checks:
            assert cli.run_scenario('network-plan', ['--preflight', '-E', 'dev'], prog='p') == 0
        assert mock_checks.call_args.kwargs['env'] == 'dev'
        assert "Preflight checks for environment 'dev'" in capsys.readouterr().out


class TestDispatchScenario:
    """Tests for 'scenario' noun."""

    def test_list(self, capsys):
        assert cli.dispatch_scenario(['list']) == 0
        out = capsys.readouterr().out
        assert 'network-roundtrip' in out
        assert 'identity-bootstrap' in out

    def test_run_unknown(self, capsys):
        assert cli.dispatch_scenario(['run', 'vm-roundtrip']) == 1
        assert "Unknown scenario 'vm-roundtrip'" in capsys.readouterr().out

    def test_run_without_name(self):
        assert cli.dispatch_scenario(['run']) == 1

    def test_run_known(self):
        with patch('cli.run_scenario', return_value=0) as mock_run:
            assert cli.dispatch_scenario(['run', 'network-roundtrip', '-E', 'dev']) == 0
        assert mock_run.call_args.args[:2] == ('network-roundtrip', ['-E', 'dev'])

    def test_identity_bootstrap(self):
        with patch('cli.run_scenario', return_value=0) as mock_run:
            assert cli.dispatch_identity(['bootstrap', '-E', 'dev']) == 0
        assert mock_run.call_args.args[0] == 'identity-bootstrap'


class TestRender:
    """Tests for 'network render'."""

    def test_prints_terraform_json(self, capsys):
        assert cli.render_main(['-E', 'dev']) == 0
        doc = json.loads(capsys.readouterr().out)
        assert doc['resource']['google_compute_network']['vpc']['auto_create_subnetworks'] is False
        assert 'local' in doc['terraform']['backend']

    def test_prod_uses_gcs_backend(self, capsys):
        cli.render_main(['-E', 'prod'])
        doc = json.loads(capsys.readouterr().out)
        assert doc['terraform']['backend'] == {'gcs': {'bucket': 'cicd-prod-tfstate', 'prefix': 'vpc/prod'}}

    def test_writes_to_directory(self, tmp_path, capsys):
        assert cli.render_main(['-E', 'dev', '-o', str(tmp_path / 'out')]) == 0
        assert (tmp_path / 'out' / 'main.tf.json').exists()
        assert 'Wrote' in capsys.readouterr().out

    def test_env_required(self):
        with pytest.raises(SystemExit):
            cli.render_main([])


class TestParamsCommands:
    """Tests for the 'params' noun."""

    def test_unknown_action(self, capsys):
        assert cli.params_main(['edit']) == 1
        assert "Unknown params action 'edit'" in capsys.readouterr().out

    def test_list(self, capsys):
        assert cli.params_main(['list']) == 0
        out = capsys.readouterr().out
        assert 'committed (dev.tfvars)' in out
        assert 'secrets (PROD_*)' in out
        assert 'secrets (STAGE_*)' in out

    def test_show_committed(self, capsys):
        assert cli.params_main(['show', '-E', 'dev']) == 0
        out = capsys.readouterr().out
        assert out.startswith('# dev (')
        assert 'DMZ_cidr   = "12.0.0.0/24"' in out
        assert 'Network: dev-vpc (project cicd-dev-xxxxxx, custom mode)' in out
        assert 'dmz-subnet' in out

    def test_show_json_from_secrets(self, prod_secrets, capsys):
        assert cli.params_main(['show', '-E', 'prod', '--json']) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['source'] == 'secrets'
        assert data['params']['name'] == 'prod'
        assert data['graph']['network']['name'] == 'prod-vpc'

    def test_show_missing_secrets(self, capsys):
        assert cli.params_main(['show', '-E', 'prod']) == 1
        assert 'PROD_PROJECT_ID' in capsys.readouterr().out

    def test_validate_env(self, capsys):
        assert cli.params_main(['validate', '-E', 'dev']) == 0
        assert '✓ dev' in capsys.readouterr().out

    def test_validate_all_reports_each_env(self, prod_secrets, capsys):
        assert cli.params_main(['validate', '--all']) == 1
        out = capsys.readouterr().out
        assert '✓ dev' in out
        assert '✓ prod (secrets)' in out
        assert '✗ stage' in out

    def test_validate_invalid_cidr(self, prod_secrets, monkeypatch, capsys):
        monkeypatch.setenv('PROD_BACK_CIDR', '10.1.0.0/25')
        assert cli.params_main(['validate', '-E', 'prod']) == 1
        out = capsys.readouterr().out
        assert '✗ prod (secrets):' in out
        assert 'overlaps back_cidr' in out

    def test_validate_cross_env_warning(self, prod_secrets, monkeypatch, capsys):
        monkeypatch.setenv('PROD_FRONT_CIDR', '10.0.0.0/24')
        cli.params_main(['validate', '--all'])
        assert '! ' in capsys.readouterr().out

    def test_validate_requires_target(self):
        with pytest.raises(SystemExit):
            cli.params_main(['validate'])

    def test_materialize(self, prod_secrets, tmp_path, capsys):
        output = tmp_path / 'prod.tfvars'
        assert cli.params_main(['materialize', '-E', 'prod', '-o', str(output)]) == 0
        assert 'project_id = "cicd-prod-xxxxxx"' in output.read_text()
        assert output.stat().st_mode & 0o777 == 0o600
        assert f'Wrote {output}' in capsys.readouterr().out

    def test_materialize_refuses_overwrite(self, prod_secrets, tmp_path, capsys):
        output = tmp_path / 'prod.tfvars'
        output.write_text('keep')
        assert cli.params_main(['materialize', '-E', 'prod', '-o', str(output)]) == 1
        assert output.read_text() == 'keep'
        assert '--force' in capsys.readouterr().out

    def test_materialize_force(self, prod_secrets, tmp_path):
        output = tmp_path / 'prod.tfvars'
        output.write_text('old')
        assert cli.params_main(['materialize', '-E', 'prod', '-o', str(output), '--force']) == 0
        assert 'cicd-prod-xxxxxx' in output.read_text()
