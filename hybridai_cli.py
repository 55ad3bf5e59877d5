import argparse
import json
import sys
from typing import Iterator, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(data, dict) and data.get("detail"):
        return str(data["detail"])
    return resp.text or resp.reason_phrase


def _iter_ndjson(resp: httpx.Response) -> Iterator[dict]:
    for line in resp.iter_lines():
        if not line.strip():
            continue
        try:
            item = json.loads(line)
        except ValueError:
            continue
        if isinstance(item, dict):
            yield item


def _format_size(size_bytes: int) -> str:
    size = float(size_bytes or 0)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} GB"


def _format_progress(event: dict) -> str:
    status = event.get("status") or ""
    total = event.get("total")
    completed = event.get("completed")
    if total and completed is not None:
        pct = int(completed * 100 / total) if total else 0
        return f"{status} {pct}% ({_format_size(completed)}/{_format_size(total)})"
    return status


def run_status(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/ollama/status"), timeout=15)
        if resp.status_code >= 400:
            print(f"Failed to fetch status: {_error_detail(resp)}")
            return 1
        status = resp.json()
    print(f"Installed: {'yes' if status.get('installed') else 'no'}")
    print(f"Running: {'yes' if status.get('running') else 'no'}")
    if status.get("version"):
        print(f"Version: {status['version']}")
    return 0


def _post_action(args: argparse.Namespace, path: str, done: str) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, path), timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Failed: {_error_detail(resp)}")
            return 1
    print(done)
    return 0


def run_start(args: argparse.Namespace) -> int:
    return _post_action(args, "/api/ollama/start", "Ollama server started.")


def run_stop(args: argparse.Namespace) -> int:
    return _post_action(args, "/api/ollama/stop", "Ollama server stopped.")


def run_models_ls(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/ollama/models"), timeout=15)
        if resp.status_code >= 400:
            print(f"Failed to list models: {_error_detail(resp)}")
            return 1
        models = resp.json().get("models") or []
    if not models:
        print("No models installed.")
        return 0
    for model in models:
        print(f"{model.get('name')}\t{_format_size(model.get('size_bytes') or 0)}")
    return 0


def run_models_pull(args: argparse.Namespace) -> int:
    url = _join_url(args.base_url, "/api/ollama/models/pull")
    with httpx.Client(timeout=None) as client:
        with client.stream("POST", url, json={"modelName": args.name}) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Failed to pull {args.name}: {_error_detail(resp)}")
                return 1
            for event in _iter_ndjson(resp):
                if event.get("status") == "error":
                    print(f"Failed to pull {args.name}: {event.get('error')}")
                    return 1
                print(_format_progress(event))
    return 0


def run_models_rm(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.request(
            "DELETE",
            _join_url(args.base_url, "/api/ollama/models"),
            json={"modelName": args.name},
            timeout=30,
        )
        if resp.status_code >= 400:
            print(f"Failed to delete {args.name}: {_error_detail(resp)}")
            return 1
    print(f"Deleted {args.name}.")
    return 0


def run_install(args: argparse.Namespace) -> int:
    url = _join_url(args.base_url, "/api/ollama/install")
    with httpx.Client(timeout=None) as client:
        with client.stream("POST", url) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Installation failed: {_error_detail(resp)}")
                return 1
            for item in _iter_ndjson(resp):
                if item.get("error"):
                    print(f"Installation failed: {item['error']}")
                    return 1
                print(item.get("message", ""))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="HybridAI CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Show local inference server status")
    start = subparsers.add_parser("start", help="Start the local inference server")
    start.add_argument("--timeout", type=int, default=60, help="Max wait seconds")
    stop = subparsers.add_parser("stop", help="Stop the managed inference server")
    stop.add_argument("--timeout", type=int, default=30, help="Max wait seconds")
    subparsers.add_parser("install", help="Install Ollama on this machine")

    models = subparsers.add_parser("models", help="Model management")
    models_sub = models.add_subparsers(dest="models_cmd")
    models_sub.add_parser("ls", help="List installed models")
    pull = models_sub.add_parser("pull", help="Download a model")
    pull.add_argument("name", help="Model name, e.g. qwen2.5-coder:7b-instruct-q4_K_M")
    rm = models_sub.add_parser("rm", help="Delete a model")
    rm.add_argument("name", help="Model name")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "status":
        return run_status(args)
    if args.command == "start":
        return run_start(args)
    if args.command == "stop":
        return run_stop(args)
    if args.command == "install":
        return run_install(args)
    if args.command == "models" and args.models_cmd == "ls":
        return run_models_ls(args)
    if args.command == "models" and args.models_cmd == "pull":
        return run_models_pull(args)
    if args.command == "models" and args.models_cmd == "rm":
        return run_models_rm(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
