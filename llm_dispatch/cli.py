"""Command-line interface for llm-dispatch operators."""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional, Tuple

import click

from . import __version__
from .admission import DEFAULT_PROFILES
from .circuit import CircuitBreaker
from .config import DispatcherConfig
from .errors import ProviderError, classify, counts_against_breaker, error_code, parse_retry_after
from .stores import DEFAULT_KEY_PREFIX, RedisBreakerStore


@click.group()
@click.version_option(version=__version__, prog_name="llm-dispatch")
@click.option("--redis-url", envvar="LLM_CIRCUIT_REDIS_URL",
              help="Redis URL holding shared circuit state (or set LLM_CIRCUIT_REDIS_URL)")
@click.option("--prefix", envvar="LLM_CIRCUIT_REDIS_PREFIX", default=DEFAULT_KEY_PREFIX,
              show_default=True, help="Key prefix for circuit records")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def cli(ctx: click.Context, redis_url: Optional[str], prefix: str, verbose: bool) -> None:
    """Inspect and operate the LLM provider dispatcher."""
    ctx.ensure_object(dict)
    ctx.obj["redis_url"] = redis_url
    ctx.obj["prefix"] = prefix
    ctx.obj["verbose"] = verbose
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def get_breaker(ctx: click.Context) -> CircuitBreaker:
    """Create a breaker over the shared Redis store from context."""
    if not ctx.obj.get("redis_url"):
        raise click.UsageError("No Redis URL configured. Pass --redis-url or set LLM_CIRCUIT_REDIS_URL.")
    store = RedisBreakerStore.from_url(ctx.obj["redis_url"], key_prefix=ctx.obj["prefix"])
    return CircuitBreaker(DispatcherConfig.from_env().circuit, store=store)


def fail(ctx: click.Context, error: Exception) -> None:
    if ctx.obj.get("verbose"):
        import traceback
        click.echo(traceback.format_exc(), err=True)
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@cli.command(name="classify")
@click.argument("message")
@click.option("--status", "-s", type=int, help="HTTP status code returned by the provider")
@click.option("--retry-after", "-r", help="Retry-After header value")
@click.option("--json-output", "-j", is_flag=True, help="Output as JSON")
def classify_error(message: str, status: Optional[int], retry_after: Optional[str], json_output: bool) -> None:
    """Show how a provider failure would be handled.

    Example:
        llm-dispatch classify "Too many requests" --status 429 --retry-after 2
        llm-dispatch classify "Invalid API key"
    """
    headers = {"Retry-After": retry_after} if retry_after else None
    error = ProviderError(message, "cli", status_code=status, headers=headers)
    classification = classify(error)

    output: Dict[str, Any] = {
        "category": classification.category.value,
        "code": error_code(classification.category),
        "fallback_eligible": classification.fallback_eligible,
        "counts_against_breaker": counts_against_breaker(classification),
        "status_code": classification.status_code,
        "retry_after": parse_retry_after(error),
        "matched": classification.matched,
    }

    if json_output:
        click.echo(json.dumps(output, indent=2))
        return

    click.echo(f"Category: {output['category']} ({output['code']})")
    click.echo(f"Fallback: {'yes' if output['fallback_eligible'] else 'no'}")
    click.echo(f"Counts against breaker: {'yes' if output['counts_against_breaker'] else 'no'}")
    if output["retry_after"] is not None:
        click.echo(f"Retry after: {output['retry_after']:.1f}s")


@cli.command()
@click.option("--json-output", "-j", is_flag=True, help="Output as JSON")
def profiles(json_output: bool) -> None:
    """List default admission profiles.

    Example:
        llm-dispatch profiles
    """
    if json_output:
        click.echo(json.dumps({name: profile.to_dict() for name, profile in DEFAULT_PROFILES.items()}, indent=2))
        return

    for name, profile in DEFAULT_PROFILES.items():
        click.echo(f"{name}:")
        click.echo(f"    Reservoir: {profile.reservoir} (+{profile.refresh_amount} every {profile.refresh_interval:g}s)")
        click.echo(f"    Max concurrent: {profile.max_concurrent}")
        click.echo(f"    Min time: {profile.min_time:g}s")
        click.echo(f"    High water: {profile.high_water}")


async def _circuit_stats(breaker: CircuitBreaker, providers: Tuple[str, ...]) -> Dict[str, Dict[str, Any]]:
    try:
        return await breaker.get_stats(providers)
    finally:
        await breaker.store.close()


async def _reset(breaker: CircuitBreaker, provider: Optional[str]) -> None:
    try:
        await breaker.reset(provider)
    finally:
        await breaker.store.close()


@cli.command()
@click.argument("providers", nargs=-1, required=True)
@click.option("--json-output", "-j", is_flag=True, help="Output as JSON")
@click.pass_context
def circuits(ctx: click.Context, providers: Tuple[str, ...], json_output: bool) -> None:
    """Show shared circuit breaker status.

    Example:
        llm-dispatch --redis-url redis://localhost:6379/0 circuits gemini groq openai
    """
    breaker = get_breaker(ctx)
    try:
        stats = asyncio.run(_circuit_stats(breaker, providers))
    except Exception as e:
        fail(ctx, e)
        return

    if json_output:
        click.echo(json.dumps(stats, indent=2))
        return

    for name, data in stats.items():
        state = data.get("state", "unknown")
        failures = data.get("consecutive_failures", 0)
        remaining = data.get("remaining_open", 0)

        icon = {"closed": "[CLOSED]", "open": "[OPEN]", "half_open": "[HALF]"}.get(state, "[?]")
        click.echo(f"{icon} {name}")
        if "error" in data:
            click.echo(f"    Error: {data['error']}")
            continue
        click.echo(f"    Failures: {failures}")
        if state == "open" and remaining > 0:
            click.echo(f"    Timeout: {remaining:.1f}s remaining")


@cli.command()
@click.argument("provider", required=False)
@click.pass_context
def reset(ctx: click.Context, provider: Optional[str]) -> None:
    """Reset shared circuit breaker state.

    Example:
        llm-dispatch reset
        llm-dispatch reset groq
    """
    breaker = get_breaker(ctx)
    try:
        asyncio.run(_reset(breaker, provider))
    except Exception as e:
        fail(ctx, e)
        return

    if provider:
        click.echo(f"Circuit breaker reset for {provider}.")
    else:
        click.echo("All circuit breakers reset.")


def main() -> None:
    """Entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
