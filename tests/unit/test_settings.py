import json
import logging

import pytest
import structlog

from stackforge.exceptions import ConfigurationError
from stackforge.UTILS.logging_config import configure_logging
from stackforge.UTILS.settings import Settings


def test_defaults():
    settings = Settings.from_env(env={})
    assert settings.region == 'us-east-1'
    assert settings.templates_dir == 'cloudformation'
    assert settings.parameters_dir == 'cloudformation/parameters'
    assert settings.config_file == 'stacks.yml'
    assert settings.wait_timeout == 3600
    assert settings.change_set_timeout == 300
    assert settings.capabilities == ['CAPABILITY_NAMED_IAM']


def test_environment_overrides():
    settings = Settings.from_env(env={
        'STACKFORGE_TEMPLATES_DIR': 'infra',
        'STACKFORGE_WAIT_TIMEOUT': '120',
        'STACKFORGE_MAX_ATTEMPTS': '3',
        'STACKFORGE_CAPABILITIES': 'CAPABILITY_IAM, CAPABILITY_AUTO_EXPAND',
        'LOG_LEVEL': 'DEBUG',
    })
    assert settings.templates_dir == 'infra'
    assert settings.wait_timeout == 120.0
    assert settings.max_attempts == 3
    assert settings.capabilities == ['CAPABILITY_IAM', 'CAPABILITY_AUTO_EXPAND']
    assert settings.log_level == 'DEBUG'


def test_region_precedence():
    assert Settings.from_env(env={'AWS_DEFAULT_REGION': 'eu-west-1'}).region == 'eu-west-1'
    assert Settings.from_env(env={'AWS_REGION': 'eu-west-2', 'AWS_DEFAULT_REGION': 'eu-west-1'}).region == 'eu-west-2'
    assert Settings.from_env(env={'STACKFORGE_REGION': 'ap-south-1', 'AWS_REGION': 'eu-west-2'}).region == 'ap-south-1'


def test_invalid_value():
    with pytest.raises(ConfigurationError):
        Settings.from_env(env={'STACKFORGE_WAIT_TIMEOUT': 'soon'})


def test_dotenv_file(tmp_path, monkeypatch):
    # Registered with monkeypatch so whatever the .env file sets is undone afterwards.
    for var in ('STACKFORGE_REGION', 'AWS_REGION', 'AWS_DEFAULT_REGION', 'STACKFORGE_CONFIG'):
        monkeypatch.setenv(var, 'unset')
        monkeypatch.delenv(var)
    dotenv = tmp_path / '.env'
    dotenv.write_text('STACKFORGE_REGION=ca-central-1\nSTACKFORGE_CONFIG=envs.yml\n')
    settings = Settings.from_env(dotenv_path=str(dotenv))
    assert settings.region == 'ca-central-1'
    assert settings.config_file == 'envs.yml'


def test_json_logging(capsys):
    configure_logging('INFO', json_output=True)
    structlog.get_logger('stackforge.test').info('Stack applied', stack='dev-network', status='create_complete')
    line = capsys.readouterr().err.strip().splitlines()[-1]
    event = json.loads(line)
    assert event['event'] == 'Stack applied'
    assert event['stack'] == 'dev-network'
    assert event['level'] == 'info'


def test_log_level_filters(capsys):
    configure_logging('ERROR', json_output=True)
    assert logging.getLogger().level == logging.ERROR
    structlog.get_logger('stackforge.test').info('hidden')
    assert capsys.readouterr().err == ''
