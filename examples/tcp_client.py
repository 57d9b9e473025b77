"""Connect to tcpgate, send a line and print whatever comes back."""

import argparse
import asyncio


async def run(host: str, port: int, payload: bytes) -> None:
    reader, writer = await asyncio.open_connection(host, port)
    print(f"connected: {host}:{port}")

    writer.write(payload)
    await writer.drain()

    reply = await reader.read(4096)
    print(reply.decode("utf-8", errors="replace"))

    writer.close()
    await writer.wait_closed()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--payload", default="ping")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    asyncio.run(run(args.host, args.port, args.payload.encode("utf-8")))


if __name__ == "__main__":
    main()
