#!/usr/bin/env python
"""
Server Entry Point

Starts the API or a job worker.
Usage:
    Development API:  python run_server.py --dev
    Production API:   python run_server.py --gunicorn
    Job worker:       python run_server.py --worker

    Or with Gunicorn directly:
    gunicorn orderflow.main:app -c gunicorn.conf.py
"""

import argparse
import os
import subprocess


def run_dev_server(port: int):
    """Run development server with auto-reload."""
    import uvicorn

    uvicorn.run(
        "orderflow.main:app",
        host="0.0.0.0",
        port=port,
        reload=True,
        reload_dirs=["orderflow"],
        log_level="debug",
    )


def run_gunicorn(port: int):
    """Run the API under Gunicorn with Uvicorn workers."""
    env = dict(os.environ, BIND=f"0.0.0.0:{port}")
    subprocess.run(["gunicorn", "orderflow.main:app", "-c", "gunicorn.conf.py"], env=env, check=True)


def run_worker():
    """Run one Kafka job worker in this process."""
    from orderflow.worker import main

    main()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Orderflow API Server")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dev", action="store_true", help="Run the API with auto-reload")
    mode.add_argument("--gunicorn", action="store_true", help="Run the API with Gunicorn")
    mode.add_argument("--worker", action="store_true", help="Run a job worker")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", 8000)), help="API port")

    args = parser.parse_args()

    if args.worker:
        run_worker()
    elif args.gunicorn:
        run_gunicorn(args.port)
    else:
        run_dev_server(args.port)
