#!/usr/bin/env python3
"""
Launch the live interview evaluation service.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path

import uvicorn


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the live interview evaluation service.",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind host.")
    parser.add_argument("--port", type=int, default=8000, help="Bind port.")
    parser.add_argument(
        "--state-dir",
        default=None,
        help="Directory for the recovery snapshot store. Default: ./state.",
    )
    parser.add_argument(
        "--rubrics-dir",
        default=None,
        help="Directory of <role>.json rubrics. Default: bundled rubrics.",
    )
    parser.add_argument(
        "--default-role",
        default=None,
        help="Role used when none or an unknown one is requested (default: vp-sales).",
    )
    parser.add_argument(
        "--mic-device",
        default=None,
        help="Substring of the microphone device name. Default: system default input.",
    )
    parser.add_argument("--log-level", default="info", help="Uvicorn log level.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()

    state_dir = (
        Path(args.state_dir).expanduser()
        if args.state_dir
        else Path(__file__).parent / "state"
    )

    os.environ["SERVER_HOST"] = args.host
    os.environ["SERVER_PORT"] = str(args.port)
    os.environ["STATE_DIR"] = str(state_dir)
    if args.rubrics_dir:
        os.environ["RUBRICS_DIR"] = str(Path(args.rubrics_dir).expanduser())
    if args.default_role:
        os.environ["DEFAULT_ROLE"] = args.default_role
    if args.mic_device:
        os.environ["MIC_DEVICE_NAME"] = args.mic_device

    from interview_server import SERVICE_NAME, app  # Import after env config

    print(
        f"Starting {SERVICE_NAME} bind=http://{args.host}:{args.port} "
        f"state_dir={state_dir}"
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
