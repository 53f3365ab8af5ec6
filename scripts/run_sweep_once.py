"""Execute a single consolidation sweep (for cron)."""

from backend.app.jobs.sweep_worker import main


if __name__ == "__main__":
    raise SystemExit(main(["--once"]))
