"""
AI Provider Layer
=================

Usage:
    from hermes.ai import CLIProvider, execute_with_retry

    provider = CLIProvider(["claude", "-p"])
    result = await execute_with_retry(provider, prompt, workdir, timeout=300)
"""

from hermes.ai.provider import AIProvider, CLIProvider, ExecuteResult, StreamEvent, get_provider
from hermes.ai.retry import RetryConfig, collect_stream, execute_with_retry
from hermes.ai.scripted import ScriptedProvider

__all__ = [
    'AIProvider',
    'CLIProvider',
    'ExecuteResult',
    'RetryConfig',
    'ScriptedProvider',
    'StreamEvent',
    'collect_stream',
    'execute_with_retry',
    'get_provider',
]
