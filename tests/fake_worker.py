"""Stand-in for the file manager worker, driven by FAKE_WORKER_MODE.

    ready    - prints the readiness banner, then idles
    silent   - never prints the banner
    crash    - exits with code 3 straight away
    launcher - behaves like npx: starts a child worker in FAKE_WORKER_CHILD_MODE
               (default ready), writes its pid to FAKE_WORKER_PIDFILE and waits

FAKE_WORKER_IGNORE_TERM=1 makes the worker ignore SIGTERM.
"""
import argparse
import os
import signal
import subprocess
import sys
import time

parser = argparse.ArgumentParser()
parser.add_argument("--port", type=int)
parser.add_argument("--root")
parser.add_argument("--prefix")
args, _unknown = parser.parse_known_args()

mode = os.environ.get("FAKE_WORKER_MODE", "ready")

if os.environ.get("FAKE_WORKER_IGNORE_TERM") == "1":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)

if mode == "crash":
    print("cannot bind", file=sys.stderr, flush=True)
    sys.exit(3)

if mode == "launcher":
    env = {**os.environ, "FAKE_WORKER_MODE": os.environ.get("FAKE_WORKER_CHILD_MODE", "ready")}
    child = subprocess.Popen([sys.executable, __file__, *sys.argv[1:]], env=env)
    with open(os.environ["FAKE_WORKER_PIDFILE"], "w") as f:
        f.write(str(child.pid))
    sys.exit(child.wait())

if mode == "ready":
    print("Cloud Commander", flush=True)
    print(f"url: http://127.0.0.1:{args.port}{args.prefix}", flush=True)

while True:
    time.sleep(1)
