"""
dvmpay CLI: ask a DVM, or run as one.

Commands:
  dvmpay keygen          Generate a Nostr keypair (put the secret in .env)
  dvmpay ask "<prompt>"  Stream an answer from DVMPAY_DVM_PUBKEY, auto-paying small invoices
  dvmpay provider        Run as a DVM (Ollama + LND) with the history server
  dvmpay stats           Print this identity's DVM job statistics from relays
"""

import asyncio
import sys
from pathlib import Path

from dvmpay.errors import ConfigError, DVMError


def _load_dotenv():
    """Load .env from cwd so commands work without manual exports."""
    from dotenv import load_dotenv

    load_dotenv(Path.cwd() / ".env", override=False)


def keygen_command():
    from dvmpay.keys import ENV_PRIVATE_KEY, Keypair

    kp = Keypair.generate()
    print("New Nostr keypair (never commit the secret):")
    print(f"  pubkey: {kp.public_key}")
    print(f"  secret: {kp.private_key_hex}")
    print(f"\nAdd to .env:\n  {ENV_PRIVATE_KEY}={kp.private_key_hex}")


async def _ask(prompt: str) -> None:
    from dvmpay.client import DVMClient
    from dvmpay.config import load_settings
    from dvmpay.keys import Keypair
    from dvmpay.llm.dvm import DVMLanguageModel
    from dvmpay.logs import setup_logging
    from dvmpay.payments import get_wallet
    from dvmpay.payments.handler import PaymentContinuationHandler
    from dvmpay.telemetry import LoggingMetricsSink
    from dvmpay.transport.relay import RelayPool

    settings = load_settings()
    setup_logging(settings.log_level, settings.log_json)
    if settings.dvm is None:
        raise ConfigError("Set DVMPAY_DVM_PUBKEY to the DVM you want to ask")

    identity = None
    if not settings.dvm.use_ephemeral_requests:
        identity = Keypair.from_env()
    try:
        wallet = get_wallet(settings.wallet)
    except ConfigError as e:
        print(f"[CLIENT] No wallet ({e}); invoices will be shown instead of paid.")
        wallet = None

    pool = RelayPool(settings.dvm.relays, request_timeout=settings.network.request_timeout)
    metrics = LoggingMetricsSink()
    model = DVMLanguageModel(
        DVMClient(pool, metrics=metrics),
        settings.dvm,
        identity=identity,
        payments=PaymentContinuationHandler(wallet, settings.payment, metrics),
        metrics=metrics,
    )
    print(f"[CLIENT] Asking DVM {settings.dvm.dvm_pubkey[:12]}... (kind {settings.dvm.request_kind})")
    try:
        async with model.stream_text(prompt) as stream:
            async for chunk in stream:
                if chunk.is_info:
                    print(f"\n[DVM] {chunk.text}")
                elif chunk.final:
                    print(f"\n\n[DVM] Final result:\n{chunk.text}")
                else:
                    print(chunk.text, end="", flush=True)
        print()
    finally:
        await pool.close()


def ask_command():
    if len(sys.argv) < 3:
        print('Usage: dvmpay ask "<prompt>"')
        sys.exit(1)
    asyncio.run(_ask(" ".join(sys.argv[2:])))


async def _provider() -> None:
    import uvicorn

    from dvmpay.config import load_settings
    from dvmpay.keys import Keypair
    from dvmpay.llm.ollama import OllamaLanguageModel
    from dvmpay.logs import setup_logging
    from dvmpay.payments import get_wallet
    from dvmpay.provider.dvm import DVMProvider
    from dvmpay.provider.server import create_app
    from dvmpay.telemetry import LoggingMetricsSink
    from dvmpay.transport.relay import RelayPool

    settings = load_settings()
    setup_logging(settings.log_level, settings.log_json)
    keypair = Keypair.from_env()
    pool = RelayPool(settings.network.relays, request_timeout=settings.network.request_timeout)
    provider = DVMProvider(
        keypair,
        pool,
        get_wallet(settings.wallet),
        OllamaLanguageModel(settings.provider.ollama_base_url, settings.provider.ollama_model),
        settings.provider,
        metrics=LoggingMetricsSink(),
    )
    await provider.start()
    print(f"[PROVIDER] DVM {keypair.public_key} serving kinds {settings.provider.kinds}")
    print(f"[PROVIDER] History: http://127.0.0.1:{settings.provider.history_port}/jobs  /stats")
    server = uvicorn.Server(
        uvicorn.Config(create_app(provider), host="0.0.0.0", port=settings.provider.history_port, log_level="info")
    )
    try:
        await server.serve()
    finally:
        await provider.stop()
        await pool.close()


def provider_command():
    asyncio.run(_provider())


async def _stats() -> None:
    from dvmpay.config import load_settings
    from dvmpay.keys import Keypair
    from dvmpay.provider.history import JobHistory
    from dvmpay.events import JOB_FEEDBACK_KIND, JOB_RESULT_KINDS, Filter
    from dvmpay.transport.relay import RelayPool

    settings = load_settings()
    keypair = Keypair.from_env()
    pool = RelayPool(settings.network.relays, request_timeout=settings.network.request_timeout)
    try:
        events = await pool.query([Filter(authors=[keypair.public_key], kinds=JOB_RESULT_KINDS + [JOB_FEEDBACK_KIND])])
    finally:
        await pool.close()
    stats = JobHistory.from_events(events, keypair.public_key).statistics()
    print(f"[PROVIDER] Stats for {keypair.public_key[:12]}...")
    for name, value in stats.model_dump().items():
        print(f"  {name}: {value}")


def stats_command():
    asyncio.run(_stats())


def main():
    """CLI entry point."""
    _load_dotenv()
    if len(sys.argv) < 2:
        print("dvmpay CLI")
        print("\nCommands:")
        print("  dvmpay keygen           — Generate a Nostr keypair")
        print('  dvmpay ask "<prompt>"   — Stream an answer from a DVM (pays small invoices)')
        print("  dvmpay provider         — Run as a DVM with the job history server")
        print("  dvmpay stats            — Print job statistics for this identity")
        sys.exit(1)

    command = sys.argv[1]
    commands = {
        "keygen": keygen_command,
        "ask": ask_command,
        "provider": provider_command,
        "stats": stats_command,
    }
    if command not in commands:
        print(f"Unknown command: {command}")
        print("Use 'dvmpay keygen', 'dvmpay ask \"<prompt>\"', 'dvmpay provider', 'dvmpay stats'")
        sys.exit(1)
    try:
        commands[command]()
    except DVMError as e:
        print(f"[{type(e).__name__}] {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nStopped.")


if __name__ == "__main__":
    main()
