"""Local TCP echo server to point a device proxy at."""

import argparse
import asyncio


async def echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    print(f"connected: {writer.get_extra_info('peername')}")
    while True:
        data = await reader.read(16384)
        if not data:
            break
        writer.write(data)
        await writer.drain()
    writer.close()


async def run(host: str, port: int) -> None:
    server = await asyncio.start_server(echo, host, port)
    async with server:
        await server.serve_forever()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8554)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    asyncio.run(run(args.host, args.port))


if __name__ == "__main__":
    main()
