import argparse
import subprocess
import sys
import time
from typing import List

from .shared.logging_setup import setup_logging
from .shared.settings import base_dir_from_env, load_cfg

LEDGER_MODULE = "paytracker.services.ledger_api"
WATCHER_MODULE = "paytracker.services.chat_watcher"


def child_modules(no_watcher: bool) -> List[str]:
    mods = [LEDGER_MODULE]
    if not no_watcher:
        mods.append(WATCHER_MODULE)
    return mods


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the ledger service and the chat watcher.")
    parser.add_argument(
        "--no-watcher",
        action="store_true",
        help="Only start the ledger service (run the watcher elsewhere).",
    )
    args = parser.parse_args()

    base_dir = base_dir_from_env()
    cfg = load_cfg()
    log = setup_logging("launcher", cfg, base_dir)

    procs: List[subprocess.Popen] = []

    def start(module: str) -> None:
        # as modules, so package-relative imports resolve
        p = subprocess.Popen([sys.executable, "-m", module], cwd=str(base_dir))
        procs.append(p)
        log.info("Started: %s (pid=%s)", module, p.pid)

    for mod in child_modules(args.no_watcher):
        start(mod)
        if mod == LEDGER_MODULE:
            # let the API bind before the watcher starts reporting to it
            time.sleep(1.0)

    log.info("Running. Ctrl+C to stop.")
    try:
        while True:
            for p in list(procs):
                rc = p.poll()
                if rc is not None:
                    log.error("Process exited pid=%s code=%s. Shutting down.", p.pid, rc)
                    raise KeyboardInterrupt
            time.sleep(0.5)
    except KeyboardInterrupt:
        log.info("Stopping...")
        for p in procs:
            if p.poll() is None:
                p.terminate()
        deadline = time.monotonic() + 5.0
        for p in procs:
            try:
                p.wait(timeout=max(0.1, deadline - time.monotonic()))
            except subprocess.TimeoutExpired:
                p.kill()
        log.info("Stopped.")


if __name__ == "__main__":
    main()
