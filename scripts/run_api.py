#!/usr/bin/env python3
"""
HTTP entrypoint - serves the deprecation API with uvicorn.
"""

import argparse
import sys
from pathlib import Path

# Load environment variables from .env file first
import dotenv
dotenv.load_dotenv()

import uvicorn

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from schema_sunset.core.config import ensure_data_directories, load_policies, validate_config


def main():
    parser = argparse.ArgumentParser(description="Serve the schema deprecation API")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    args = parser.parse_args()

    try:
        policies = load_policies()
    except (OSError, ValueError) as e:
        print(f"Invalid policy file: {e}")
        return 2

    issues = validate_config(policies)
    if issues:
        print("Invalid configuration:")
        for issue in issues:
            print(f"  - {issue}")
        return 2

    ensure_data_directories()
    uvicorn.run("schema_sunset.api.main:app", host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
