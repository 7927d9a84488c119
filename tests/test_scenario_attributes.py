#!/usr/bin/env python3
"""Tests for scenario attributes and phase lists.

These tests verify that:
1. Scenario classes have expected pre-flight attributes
2. Default values are correct when attributes are missing
3. Phase order matches the pipeline (authenticate first, engine last)
"""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from actions import (
    AuthenticateAction,
    EngineApplyAction,
    EngineDestroyAction,
    EnginePlanAction,
)
from scenarios import get_scenario, list_scenarios


class TestScenarioAttributes:
    """Test scenario attribute definitions."""

    def test_registered_scenarios(self):
        assert list_scenarios() == [
            'identity-bootstrap',
            'network-apply',
            'network-destroy',
            'network-plan',
            'network-roundtrip',
        ]

    @pytest.mark.parametrize('name', ['network-plan', 'network-apply', 'network-destroy', 'network-roundtrip'])
    def test_network_scenarios_require_auth_and_engine(self, name):
        scenario = get_scenario(name)
        assert getattr(scenario, 'requires_auth', False) is True
        assert getattr(scenario, 'requires_engine', False) is True

    def test_plan_needs_no_gcloud(self):
        """Plan only talks to the engine."""
        assert get_scenario('network-plan').requires_gcloud is False

    def test_apply_needs_gcloud_for_apis(self):
        assert get_scenario('network-apply').requires_gcloud is True

    @pytest.mark.parametrize('name,expected', [
        ('network-plan', False),
        ('network-apply', False),
        ('network-destroy', True),
        ('network-roundtrip', True),
        ('identity-bootstrap', False),
    ])
    def test_requires_confirmation(self, name, expected):
        scenario = get_scenario(name)
        assert getattr(scenario, 'requires_confirmation', False) is expected

    def test_bootstrap_uses_operator_credentials(self):
        scenario = get_scenario('identity-bootstrap')
        assert scenario.requires_auth is False
        assert scenario.requires_engine is False
        assert scenario.requires_gcloud is True

    def test_unknown_scenario(self):
        with pytest.raises(ValueError, match='Unknown scenario: vm-roundtrip'):
            get_scenario('vm-roundtrip')


class TestScenarioPhases:
    """Test phase composition."""

    def _names(self, scenario_name, env_config):
        return [p[0] for p in get_scenario(scenario_name).get_phases(env_config)]

    def test_plan_phases(self, env_config):
        assert self._names('network-plan', env_config) == [
            'authenticate', 'materialize', 'validate', 'render', 'init', 'plan',
        ]

    def test_apply_phases(self, env_config):
        assert self._names('network-apply', env_config) == [
            'authenticate', 'materialize', 'validate', 'enable_apis', 'render', 'init', 'plan', 'apply',
        ]

    def test_destroy_phases(self, env_config):
        assert self._names('network-destroy', env_config) == [
            'authenticate', 'materialize', 'validate', 'render', 'init', 'destroy',
        ]

    def test_authenticate_always_first(self, env_config):
        for name in list_scenarios():
            phases = get_scenario(name).get_phases(env_config)
            if get_scenario(name).requires_auth:
                assert isinstance(phases[0][1], AuthenticateAction)

    def test_validation_precedes_remote_calls(self, env_config):
        """No API or engine phase runs before parameters are validated."""
        names = self._names('network-roundtrip', env_config)
        assert names.index('validate') < names.index('enable_apis') < names.index('init')

    def test_roundtrip_checks_idempotence(self, env_config):
        phases = dict((p[0], p[1]) for p in get_scenario('network-roundtrip').get_phases(env_config))
        replan = phases['verify_idempotent']
        assert isinstance(replan, EnginePlanAction)
        assert replan.expect_no_changes is True
        assert isinstance(phases['recreate'], EngineApplyAction)
        assert isinstance(phases['cleanup'], EngineDestroyAction)

    def test_action_names_unique(self, env_config):
        for name in list_scenarios():
            action_names = [p[1].name for p in get_scenario(name).get_phases(env_config)]
            assert len(action_names) == len(set(action_names)), name

    def test_bootstrap_phases(self, env_config):
        assert self._names('identity-bootstrap', env_config) == ['pool', 'provider', 'binding']
