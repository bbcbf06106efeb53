import argparse
import base64
import json
import mimetypes
import os
import time
from pathlib import Path

import httpx

TUS_HEADERS = {"Tus-Resumable": "1.0.0"}


def _encode_metadata(values: dict[str, str]) -> str:
    return ",".join(f"{key} {base64.b64encode(value.encode('utf-8')).decode('ascii')}" for key, value in values.items())


def _create(client: httpx.Client, base_url: str, path: Path, mime_type: str) -> str:
    response = client.post(
        f"{base_url}/uploads",
        headers={
            **TUS_HEADERS,
            "Upload-Length": str(path.stat().st_size),
            "Upload-Metadata": _encode_metadata({"filename": path.name, "filetype": mime_type}),
        },
        timeout=30.0,
    )
    response.raise_for_status()
    return response.headers["Location"]


def _current_offset(client: httpx.Client, upload_url: str) -> int:
    response = client.head(upload_url, headers=TUS_HEADERS, timeout=30.0)
    response.raise_for_status()
    return int(response.headers["Upload-Offset"])


def _send_chunks(client: httpx.Client, upload_url: str, path: Path, offset: int, chunk_size: int, max_retries: int) -> int:
    size = path.stat().st_size
    failures = 0
    with path.open("rb") as handle:
        while offset < size:
            handle.seek(offset)
            chunk = handle.read(chunk_size)
            try:
                response = client.patch(
                    upload_url,
                    content=chunk,
                    headers={
                        **TUS_HEADERS,
                        "Content-Type": "application/offset+octet-stream",
                        "Upload-Offset": str(offset),
                    },
                    timeout=120.0,
                )
            except httpx.TransportError:
                failures += 1
                if failures > max_retries:
                    raise
                time.sleep(min(2**failures, 10))
                offset = _current_offset(client, upload_url)
                continue
            if response.status_code == 409:
                # an earlier attempt already landed; resync from the server
                offset = _current_offset(client, upload_url)
                continue
            response.raise_for_status()
            offset = int(response.headers["Upload-Offset"])
            failures = 0
            print(f"{offset}/{size} bytes")
    return offset


def main() -> int:
    parser = argparse.ArgumentParser(description="Resumable upload client for tusvault.")
    parser.add_argument("file", help="Path of the file to upload")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--api-key", default=os.environ.get("TUSVAULT_API_KEY", "dev-key"), help="X-API-Key value")
    parser.add_argument("--upload-url", default="", help="Resume an existing upload instead of creating one")
    parser.add_argument("--chunk-size-bytes", type=int, default=4 * 1024 * 1024, help="Bytes sent per PATCH")
    parser.add_argument("--max-retries", type=int, default=5, help="Retries per chunk on transport errors")
    parser.add_argument("--share", action="store_true", help="Create an access reference once finished")
    args = parser.parse_args()

    path = Path(args.file)
    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"

    with httpx.Client(headers={"X-API-Key": args.api_key}) as client:
        upload_url = args.upload_url or _create(client, args.base_url, path, mime_type)
        print(f"upload url: {upload_url}")
        offset = _current_offset(client, upload_url)
        offset = _send_chunks(client, upload_url, path, offset, args.chunk_size_bytes, args.max_retries)

        if args.share:
            upload_id = upload_url.rstrip("/").rsplit("/", 1)[-1]
            response = client.post(f"{args.base_url}/v1/accrefs", json={"upload_id": upload_id}, timeout=30.0)
            response.raise_for_status()
            print(json.dumps(response.json(), indent=2))

    return 0 if offset == path.stat().st_size else 1


if __name__ == "__main__":
    raise SystemExit(main())
