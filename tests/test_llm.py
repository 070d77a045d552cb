"""
Tests for the LLM client layer: retries, JSON parsing, model registry and
client factory. SDK clients are never constructed.
"""

import os
import sys
from unittest.mock import patch

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from kx_library import llm
from kx_library.llm.base import BaseLLMClient, LLMProvider, LLMResponse, MAX_RETRIES
from kx_library.llm.config import get_default_model, get_model_info, resolve_model_name


class ScriptedClient(BaseLLMClient):
    """Returns or raises the scripted outcomes in order."""

    def __init__(self, outcomes):
        super().__init__('test-model', 'test-project', 'test-region')
        self.outcomes = list(outcomes)
        self.calls = 0

    @property
    def provider(self):
        return LLMProvider.GEMINI

    def _initialize(self):
        pass

    def _generate_once(self, prompt, config, system_prompt):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return LLMResponse(text=outcome, model=self.model_id, provider=self.provider)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch('kx_library.llm.base.time.sleep') as mock_sleep:
        yield mock_sleep


class TestGenerate:
    def test_retries_transient_errors(self, no_sleep):
        client = ScriptedClient([RuntimeError('429 rate limited'), 'done'])

        assert client.generate('hi').text == 'done'
        assert client.calls == 2
        no_sleep.assert_called_once_with(1.0)

    def test_gives_up_after_max_retries(self):
        client = ScriptedClient([RuntimeError('503 unavailable')] * MAX_RETRIES)

        with pytest.raises(RuntimeError):
            client.generate('hi')
        assert client.calls == MAX_RETRIES

    def test_permanent_error_not_retried(self):
        client = ScriptedClient([ValueError('invalid argument')])

        with pytest.raises(ValueError):
            client.generate('hi')
        assert client.calls == 1


class TestGenerateJson:
    def test_plain_json(self):
        client = ScriptedClient(['{"summary": "ok"}'])
        assert client.generate_json('p') == {'summary': 'ok'}

    def test_strips_code_fences(self):
        client = ScriptedClient(['```json\n{"summary": "fenced"}\n```'])
        assert client.generate_json('p') == {'summary': 'fenced'}

    def test_invalid_json(self):
        client = ScriptedClient(['not json at all'])
        with pytest.raises(ValueError):
            client.generate_json('p')

    def test_non_object_json(self):
        client = ScriptedClient(['[1, 2, 3]'])
        with pytest.raises(ValueError):
            client.generate_json('p')


class TestModelRegistry:
    def test_aliases(self):
        assert resolve_model_name('haiku') == 'claude-haiku-4-5'
        assert resolve_model_name('Gemini') == 'gemini-2.5-flash'
        assert resolve_model_name('custom-model') == 'custom-model'

    def test_model_info(self):
        info = get_model_info('sonnet')
        assert info.provider == LLMProvider.CLAUDE
        assert get_model_info('unknown-model') is None

    def test_default_model(self, monkeypatch):
        monkeypatch.delenv('LLM_MODEL', raising=False)
        monkeypatch.delenv('LLM_PROVIDER', raising=False)
        assert get_default_model() == 'gemini-2.5-flash'

        monkeypatch.setenv('LLM_PROVIDER', 'claude')
        assert get_default_model() == 'claude-haiku-4-5'

        monkeypatch.setenv('LLM_MODEL', 'gemini-pro')
        assert get_default_model() == 'gemini-2.5-pro'

    def test_unknown_env_model_falls_back(self, monkeypatch):
        monkeypatch.setenv('LLM_MODEL', 'gpt-unknown')
        monkeypatch.delenv('LLM_PROVIDER', raising=False)
        assert get_default_model() == 'gemini-2.5-flash'


class TestGetClient:
    def setup_method(self):
        llm.clear_cache()

    def teardown_method(self):
        llm.clear_cache()

    def test_gemini_client_cached(self, monkeypatch):
        monkeypatch.setenv('GCP_PROJECT', 'my-project')
        monkeypatch.setenv('GCP_REGION', 'us-central1')

        client = llm.get_client('gemini')

        assert client.provider == LLMProvider.GEMINI
        assert client.project_id == 'my-project'
        assert client.region == 'us-central1'
        assert llm.get_client('gemini') is client
        assert llm.get_client('gemini', cache=False) is not client

    def test_claude_region(self, monkeypatch):
        monkeypatch.setenv('CLAUDE_REGION', 'us-east5')

        client = llm.get_client('haiku')

        assert client.provider == LLMProvider.CLAUDE
        assert client.region == 'us-east5'
        assert client.model_id == 'claude-haiku-4-5@20251001'

    def test_unknown_model(self):
        with pytest.raises(ValueError):
            llm.get_client('no-such-model')
