import argparse

from pythonosc.dispatcher import Dispatcher
from pythonosc.osc_server import BlockingOSCUDPServer


def dump(addr, *args):
    # /capture/station/<station_id>/<color> <blink_ms>
    parts = addr.strip("/").split("/")
    if len(parts) >= 4:
        print(f"{parts[-2]:<12} {parts[-1]:<7} {args[0] if args else ''} ms")
    else:
        print(f"{addr} {args}")


ap = argparse.ArgumentParser(description="Print station light cues")
ap.add_argument("--host", default="127.0.0.1")
ap.add_argument("--port", type=int, default=9000)
opts = ap.parse_args()

disp = Dispatcher()
disp.set_default_handler(dump)

# match integrations.feedback.osc_out host/port in config/config.yaml
server = BlockingOSCUDPServer((opts.host, opts.port), disp)
print(f"listening on {opts.host}:{opts.port} ...")
server.serve_forever()
