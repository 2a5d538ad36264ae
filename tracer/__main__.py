"""
Entry point for running the tracer package as a script.

Usage:
    python -m tracer
    python -m tracer start --port 3000
    python -m tracer export --format csv -o traces.csv
"""

from tracer.cli import main

if __name__ == "__main__":
    main()
