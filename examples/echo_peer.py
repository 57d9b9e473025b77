"""Configure a running tcpgate and echo every group it emits back to the client."""

import argparse
import asyncio

import zmq
import zmq.asyncio

from tcpgate.framing import close_bracket, open_bracket, packet


async def run(options: str, inport: str, outport: str, bind: str) -> None:
    context = zmq.asyncio.Context()
    options_port = context.socket(zmq.PUSH)
    options_port.connect(options)
    to_gate = context.socket(zmq.PUSH)
    to_gate.connect(inport)
    from_gate = context.socket(zmq.PULL)
    from_gate.bind(outport)

    await options_port.send_multipart(packet(bind.encode("utf-8")))
    print(f"configured tcpgate to listen on {bind}")

    try:
        while True:
            group = [await from_gate.recv_multipart() for _ in range(4)]
            connection_id, data = group[1][1], group[2][1]
            print(f"{connection_id.decode()}: {data!r}")

            await to_gate.send_multipart(open_bracket())
            await to_gate.send_multipart(packet(connection_id))
            await to_gate.send_multipart(packet(data))
            await to_gate.send_multipart(close_bracket())
    finally:
        context.destroy(linger=0)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--options", default="tcp://127.0.0.1:5550")
    parser.add_argument("--in", dest="inport", default="tcp://127.0.0.1:5551")
    parser.add_argument("--out", dest="outport", default="tcp://127.0.0.1:5552")
    parser.add_argument("--bind", default="127.0.0.1:8000")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    asyncio.run(run(args.options, args.inport, args.outport, args.bind))


if __name__ == "__main__":
    main()
