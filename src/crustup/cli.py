from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from crustup import metrics
from crustup.config import load_pipeline_config
from crustup.env import load_dotenv_if_present
from crustup.errors import ConfigError
from crustup.ipfs import ipfs_client_from_config
from crustup.ledger.substrate import SubstrateLedgerClient
from crustup.pipeline import PipelineResult, UploadPipeline
from crustup.structured_logging import configure_structured_logging, log_event
from crustup.wallet import load_keypair

log = logging.getLogger("crustup.cli")

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_SETUP = 2
EXIT_CANCELLED = 130

# Pipeline failures that mean the run could never have started.
_SETUP_ERROR_CODES = frozenset({"ledger_not_ready"})


def _parse_args(argv: List[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="crustup",
        description="Split a file, add the parts to IPFS and place funded Crust storage orders for them.",
    )
    ap.add_argument("file", help="file to upload")
    ap.add_argument("seed", nargs="?", default=None, help="account mnemonic or secret URI (or CRUSTUP_SEED)")
    ap.add_argument("--config", dest="config_file", default=None, help="YAML file with PipelineConfig keys")
    ap.add_argument("--chunk-size", dest="chunk_size_bytes", type=int, default=None)
    ap.add_argument("--wait-replica", dest="wait_for_replica", action=argparse.BooleanOptionalAction, default=None)
    ap.add_argument("--wait-prepaid", dest="wait_for_prepaid", action=argparse.BooleanOptionalAction, default=None)
    ap.add_argument("--prepaid-amount", dest="prepaid_amount", type=int, default=None, help="pCRU, 0 disables funding")
    ap.add_argument("--poll-interval-ms", dest="poll_interval_ms", type=int, default=None)
    ap.add_argument("--chain", dest="chain_endpoint", default=None)
    ap.add_argument("--ipfs-api", dest="ipfs_api_url", default=None)
    ap.add_argument("--ipfs-auth", dest="ipfs_auth", action=argparse.BooleanOptionalAction, default=None)
    ap.add_argument("--metrics-file", dest="metrics_file", default=None, help="write Prometheus text metrics here on exit")
    return ap.parse_args(argv)


def _install_signal_handlers(cancel: threading.Event) -> None:
    """First SIGINT/SIGTERM asks the run to stop; a second one kills it."""

    def _handler(signum, frame) -> None:  # noqa: ARG001
        log_event(log, "signal_received", level=logging.WARNING, signal=int(signum))
        cancel.set()
        # Blocking uploads and inclusion waits only see the event when they return.
        signal.signal(signal.SIGINT, signal.default_int_handler)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def exit_code_for(result: PipelineResult) -> int:
    if result.ok:
        return EXIT_OK
    if result.cancelled:
        return EXIT_CANCELLED
    if result.error_code in _SETUP_ERROR_CODES:
        return EXIT_SETUP
    return EXIT_ABORTED


def main(argv: Optional[List[str]] = None) -> int:
    # Load .env early so CRUSTUP_* vars exist before config is read.
    load_dotenv_if_present()
    configure_structured_logging()

    args = _parse_args(sys.argv[1:] if argv is None else argv)
    overrides = {
        "seed": args.seed,
        "chunk_size_bytes": args.chunk_size_bytes,
        "wait_for_replica": args.wait_for_replica,
        "wait_for_prepaid": args.wait_for_prepaid,
        "prepaid_amount": args.prepaid_amount,
        "poll_interval_ms": args.poll_interval_ms,
        "chain_endpoint": args.chain_endpoint,
        "ipfs_api_url": args.ipfs_api_url,
        "ipfs_auth": args.ipfs_auth,
    }

    try:
        cfg = load_pipeline_config(args.file, config_file=args.config_file, overrides=overrides)
        if not Path(cfg.source_path).is_file():
            raise ConfigError("bad_config", "source_not_found", cfg.source_path)
        keypair = load_keypair(cfg.seed)
    except ConfigError as e:
        log_event(log, "setup_failed", level=logging.ERROR, error_code=e.code, error=str(e))
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_SETUP

    store = ipfs_client_from_config(cfg.ipfs_api_url, timeout_s=cfg.ipfs_timeout_s, authenticated=cfg.ipfs_auth)
    ledger = SubstrateLedgerClient(cfg.chain_endpoint)
    pipeline = UploadPipeline.build(cfg, store=store, ledger=ledger, keypair=keypair)

    cancel = threading.Event()
    _install_signal_handlers(cancel)

    result = pipeline.run(cancel)
    print(json.dumps(result.to_json(), indent=2, sort_keys=True))

    if args.metrics_file:
        metrics.write_textfile(args.metrics_file)

    return exit_code_for(result)


if __name__ == "__main__":
    raise SystemExit(main())
