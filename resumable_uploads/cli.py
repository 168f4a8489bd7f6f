import argparse
import sys
import threading
from pathlib import Path

import httpx

from resumable_uploads.client import DriverState, ResumableUploader, UploadFailedError
from resumable_uploads.config import settings

EXIT_INTERRUPTED = 130


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resumable chunked uploads over HTTP.")
    commands = parser.add_subparsers(dest="command", required=True)

    upload = commands.add_parser("upload", help="Upload a file, resuming from the server's confirmed offset")
    upload.add_argument("path", help="File to upload")
    upload.add_argument("--base-url", default=f"http://127.0.0.1:{settings.port}", help="Service base URL")
    upload.add_argument("--file-id", default=None, help="Upload id; defaults to the file name")
    upload.add_argument(
        "--chunk-size",
        type=int,
        default=settings.chunk_size_bytes,
        help="Bytes per chunk request",
    )

    serve = commands.add_parser("serve", help="Run the upload service")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)
    return parser


def _print_progress(fraction: float) -> None:
    print(f"\rprogress: {fraction * 100:6.2f}%", end="", flush=True)


def _upload(args: argparse.Namespace, client: httpx.Client) -> int:
    path = Path(args.path)
    if not path.is_file():
        print(f"Error: file '{path}' not found.", file=sys.stderr)
        return 1

    uploader = ResumableUploader(client, chunk_size=args.chunk_size, on_progress=_print_progress)
    outcome: dict = {}

    def _drive() -> None:
        try:
            outcome["state"] = uploader.start(path, file_id=args.file_id)
        except UploadFailedError as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=_drive, name="resumable-upload", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.2)
    except KeyboardInterrupt:
        if uploader.state is DriverState.active:
            uploader.pause()
        worker.join()
    print()

    if "error" in outcome:
        print(f"Upload failed: {outcome['error']}", file=sys.stderr)
        return 1
    if outcome.get("state") is DriverState.paused:
        print(f"Paused at offset {uploader.offset}; run the same command again to resume.")
        return EXIT_INTERRUPTED
    print(f"Uploaded '{uploader.file_id}' ({path.stat().st_size} bytes).")
    return 0


def main(argv: list[str] | None = None, client: httpx.Client | None = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("resumable_uploads.main:app", host=args.host, port=args.port)
        return 0

    if client is not None:
        return _upload(args, client)
    with httpx.Client(base_url=args.base_url, timeout=settings.client_timeout_seconds) as owned_client:
        return _upload(args, owned_client)


if __name__ == "__main__":
    raise SystemExit(main())
