#!/usr/bin/env python3
"""Pipeline runner CLI entrypoint."""

from pipeline_runner.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
