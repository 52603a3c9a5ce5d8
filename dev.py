#!/usr/bin/env python3

"""
Development utility for the Morphik Remote MCP Server
"""

import argparse
import asyncio
import os
import secrets
import subprocess
import sys
from pathlib import Path

import httpx


def run_command(cmd, check=True):
    """Run a command and stream its output"""
    print(f"🔧 Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=False)
    if check and result.returncode != 0:
        print(f"❌ Command failed with exit code {result.returncode}")
        sys.exit(result.returncode)
    return result.returncode


def run_server():
    """Run the development server with auto-reload"""
    print("🚀 Starting development server...")
    os.environ.setdefault("ENVIRONMENT", "development")
    run_command([
        sys.executable, "-m", "uvicorn", "main:app",
        "--host", os.getenv("HOST", "0.0.0.0"),
        "--port", os.getenv("PORT", "8000"),
        "--reload",
    ])


def run_tests():
    """Run the test suite"""
    print("🧪 Running tests...")
    return run_command([sys.executable, "-m", "pytest", "-q"], check=False)


def generate_secret_key():
    """Generate a secure secret key for callback signatures"""
    secret = secrets.token_urlsafe(32)
    print("🔐 Generated secure secret key:")
    print(f"   SECRET_KEY={secret}")
    print("\n💡 Add this to your environment variables")
    return secret


def check_env():
    """Check environment configuration"""
    print("🔍 Checking environment configuration...")

    from config import Config

    try:
        config = Config()
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        return False

    print("✅ Environment configuration looks good!")

    print("\n📋 Current configuration:")
    print(f"   Environment: {config.environment}")
    print(f"   Host: {config.host}")
    print(f"   Port: {config.port}")
    print(f"   Base URL: {config.base_url}")
    print(f"   Upstream authorize URL: {config.upstream_authorize_url}")
    print(f"   Storage backend: {config.storage_backend}")
    print(f"   Code / token / refresh expiry: "
          f"{config.oauth_code_expiry}s / {config.oauth_token_expiry}s / {config.oauth_refresh_token_expiry}s")
    print(f"   Rate limiting: {config.rate_limit_enabled}")

    if config.is_development and config.secret_key == "your-secret-key-change-in-production":
        print("⚠️  SECRET_KEY is the development placeholder; run: python dev.py secret")

    return True


def status(url: str):
    """Show server status"""
    print("📊 Server Status:")

    async def check_health():
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{url.rstrip('/')}/health", timeout=5)
            response.raise_for_status()
            return response.json()

    try:
        health = asyncio.run(check_health())
    except httpx.HTTPError as e:
        print(f"❌ Server at {url} is not reachable: {e}")
        return False

    print(f"✅ Server at {url} is running")
    print(f"   Status: {health.get('status')}")
    print(f"   Version: {health.get('version')}")
    print(f"   Environment: {health.get('environment')}")
    print(f"   Components: {health.get('components')}")
    return True


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Development utility for Morphik Remote MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Available commands:
  run         Run development server
  test        Run tests
  secret      Generate secure secret key
  check       Check environment configuration
  status      Show server status

Examples:
  python dev.py run          # Run development server
  python dev.py test         # Run tests
  python dev.py status --url http://localhost:8000
        """
    )

    parser.add_argument(
        "command",
        choices=["run", "test", "secret", "check", "status"],
        help="Command to execute"
    )
    parser.add_argument(
        "--url",
        default=os.getenv("BASE_URL", "http://localhost:8000"),
        help="Server URL for the status command"
    )

    args = parser.parse_args()

    # Change to script directory
    os.chdir(Path(__file__).parent)

    print("🛠️  Morphik Remote MCP Server - Development Utility")
    print("=" * 60)

    if args.command == "run":
        run_server()

    elif args.command == "test":
        sys.exit(run_tests())

    elif args.command == "secret":
        generate_secret_key()

    elif args.command == "check":
        sys.exit(0 if check_env() else 1)

    elif args.command == "status":
        sys.exit(0 if status(args.url) else 1)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
