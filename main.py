"""Command line entry point for the OHLC predictor."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any

from ohlc_predictor.core.config import build_config
from ohlc_predictor.core.exceptions import OrchestrationError, ValidationError
from ohlc_predictor.core.session import PredictionSession
from ohlc_predictor.core.training import TrainingProgress


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    default_mode = os.getenv("OHLC_PREDICTOR_DEFAULT_MODE", "predict")

    parser = argparse.ArgumentParser(
        description="Train a small sequence model on OHLC history and predict the next day.",
    )
    parser.add_argument(
        "--mode",
        choices=["predict", "api", "dashboard"],
        default=default_mode,
        help="What to run (default: %(default)s).",
    )
    parser.add_argument("--file", help="CSV or JSON price history to train on (predict mode).")
    parser.add_argument("--format", dest="fmt", choices=["csv", "json"], help="Override format detection.")
    parser.add_argument("--window-length", type=int, help="Number of days per training sequence.")
    parser.add_argument("--window-stride", type=int, help="Offset between consecutive sequences.")
    parser.add_argument("--max-history", type=int, help="Only train on the most recent N points.")
    parser.add_argument("--scale-policy", choices=["max", "fixed"], help="How the scale factor is chosen.")
    parser.add_argument("--fixed-scale", type=float, help="Scale factor used with --scale-policy fixed.")
    parser.add_argument("--learning-rate", type=float, help="Optimiser learning rate.")
    parser.add_argument("--error-threshold", type=float, help="Stop once the training error drops below this.")
    parser.add_argument("--max-iterations", type=int, help="Upper bound on training iterations.")
    parser.add_argument("--hidden-layers", help="Comma separated hidden layer sizes (default: 8,8).")
    parser.add_argument(
        "--execution-mode",
        choices=["thread", "inline"],
        help="Run training on a worker thread or inline.",
    )
    parser.add_argument("--seed", type=int, help="Random seed for reproducible training.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ...).",
    )
    parser.add_argument("--api-host", default="127.0.0.1", help="Host for the API server.")
    parser.add_argument("--api-port", type=int, default=8000, help="Port for the API server.")
    parser.add_argument(
        "--ui-port",
        type=int,
        default=8501,
        help="Port for the Streamlit dashboard when launching the UI.",
    )
    parser.add_argument(
        "--ui-headless",
        action="store_true",
        help="Launch the dashboard without opening a browser window.",
    )
    parser.add_argument(
        "--ui-api-key",
        help="API key injected into the dashboard session for authenticated API calls.",
    )

    args = parser.parse_args(argv)

    supplied_argv = sys.argv[1:] if argv is None else list(argv)
    provided_mode = any(arg.startswith("--mode") for arg in supplied_argv)
    if not provided_mode and args.mode == default_mode == "predict" and not args.file:
        setattr(args, "_auto_mode", "dashboard")
        args.mode = "dashboard"
    else:
        setattr(args, "_auto_mode", None)

    return args


def _config_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "window_length": args.window_length,
        "window_stride": args.window_stride,
        "max_history": args.max_history,
        "scale_policy": args.scale_policy,
        "fixed_scale": args.fixed_scale,
        "learning_rate": args.learning_rate,
        "error_threshold": args.error_threshold,
        "max_iterations": args.max_iterations,
        "hidden_layers": args.hidden_layers,
        "execution_mode": args.execution_mode,
        "seed": args.seed,
    }


def _export_overrides(env: dict[str, str], args: argparse.Namespace) -> None:
    """Forward CLI configuration to child processes as ``OHLC_PREDICTOR_*`` variables."""

    for key, value in _config_overrides(args).items():
        if value is not None:
            env[f"OHLC_PREDICTOR_{key.upper()}"] = str(value)


def _log_progress(progress: TrainingProgress) -> None:
    logging.info(
        "Training progress: %s%% (iteration %s, error %.6f)",
        progress.percent,
        progress.iteration,
        progress.error,
    )


async def run_prediction(session: PredictionSession, path: str, fmt: str | None = None) -> dict[str, Any]:
    """Load ``path`` into ``session``, train and return the report payload."""

    try:
        if fmt:
            session.load(Path(path).expanduser().read_bytes(), fmt)
        else:
            session.load_file(path)
        report = await session.train()
    finally:
        await session.aclose()
    return report.as_dict()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    if getattr(args, "_auto_mode", None):
        logging.info(
            "No mode or input file supplied. Launching the interactive dashboard instead (override with --mode)."
        )

    try:
        config = build_config(**_config_overrides(args))
    except ValueError as exc:
        print(json.dumps({"status": "error", "message": str(exc)}), file=sys.stderr)
        return 1

    if args.mode == "dashboard":
        return launch_dashboard(args)
    if args.mode == "api":
        return launch_api(args)

    if not args.file:
        print(json.dumps({"status": "error", "message": "--file is required in predict mode"}), file=sys.stderr)
        return 2

    session = PredictionSession(config, on_progress=_log_progress)
    try:
        payload = asyncio.run(run_prediction(session, args.file, args.fmt))
    except ValidationError as exc:
        print(
            json.dumps(
                {
                    "status": "error",
                    "code": exc.code,
                    "message": str(exc),
                    "warnings": list(exc.warnings),
                }
            ),
            file=sys.stderr,
        )
        return 1
    except (OrchestrationError, OSError) as exc:
        logging.error("Prediction failed: %s", exc)
        print(json.dumps({"status": "error", "message": str(exc)}), file=sys.stderr)
        return 1

    print(json.dumps({"status": "ok", **payload}, indent=2))
    return 0


def _api_command(args: argparse.Namespace) -> list[str]:
    return [
        sys.executable,
        "-m",
        "uvicorn",
        "ui.api.main:app",
        "--host",
        str(args.api_host),
        "--port",
        str(args.api_port),
    ]


def launch_api(args: argparse.Namespace) -> int:
    """Serve the FastAPI application in the foreground."""

    env = os.environ.copy()
    _export_overrides(env, args)
    if args.ui_api_key:
        env["OHLC_PREDICTOR_UI_API_KEYS"] = args.ui_api_key
    logging.info("Starting API server on http://%s:%s", args.api_host, args.api_port)
    try:
        return subprocess.run(_api_command(args), env=env, check=False).returncode
    except KeyboardInterrupt:
        logging.info("API server interrupted by user.")
        return 0


def launch_dashboard(args: argparse.Namespace) -> int:
    """Launch the embedded API service and Streamlit dashboard."""

    frontend_path = Path(__file__).resolve().parent / "ui" / "frontend" / "app.py"
    if not frontend_path.exists():
        logging.error("Streamlit dashboard entry point not found at %s", frontend_path)
        return 1

    env = os.environ.copy()
    _export_overrides(env, args)
    env.setdefault("OHLC_PREDICTOR_API_URL", f"http://{args.api_host}:{args.api_port}")
    if args.ui_api_key:
        env["OHLC_PREDICTOR_UI_API_KEY"] = args.ui_api_key
        env["OHLC_PREDICTOR_UI_API_KEYS"] = args.ui_api_key

    logging.info(
        "Starting API server on http://%s:%s and dashboard on http://localhost:%s",
        args.api_host,
        args.api_port,
        args.ui_port,
    )

    ui_cmd = [
        sys.executable,
        "-m",
        "streamlit",
        "run",
        str(frontend_path),
        "--server.port",
        str(args.ui_port),
    ]
    if args.ui_headless:
        ui_cmd.extend(["--server.headless", "true"])

    api_process = subprocess.Popen(_api_command(args), env=env)
    try:
        result = subprocess.run(ui_cmd, env=env, check=False)
        return result.returncode
    except KeyboardInterrupt:
        logging.info("Dashboard interrupted by user.")
        return 0
    finally:
        api_process.send_signal(signal.SIGINT)
        try:
            api_process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            logging.debug("Force terminating API server")
            api_process.kill()


if __name__ == "__main__":
    raise SystemExit(main())
