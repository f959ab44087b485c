"""
Evolution Webhook Updater Script
================================
Points an Evolution instance's webhook at this backend.
Detects an ngrok tunnel in development, or takes the public URL explicitly.

Usage:
    Development (ngrok): python scripts/update_evolution_webhook.py <instance-name>
    Production:          python scripts/update_evolution_webhook.py <instance-name> --url https://your-domain.com
"""

import asyncio
import sys
from typing import Optional

import httpx
from dotenv import load_dotenv

# Load environment variables before the app settings are built
load_dotenv()

from app.modules.evolution.constants import WEBHOOK_INGRESS_PATH
from app.modules.evolution.services.evolution_client import evolution_client
from app.modules.evolution.services.session_service import build_webhook_headers, read_webhook_events
from app.shared.core.config import settings
from app.shared.utils.exceptions import ProviderHTTPError
from app.shared.utils.http_client import http_client_manager


def get_ngrok_url() -> Optional[str]:
    """Detect current ngrok tunnel URL."""
    try:
        response = httpx.get("http://localhost:4040/api/tunnels", timeout=5)
        for tunnel in response.json().get("tunnels", []):
            if tunnel["public_url"].startswith("https"):
                return tunnel["public_url"]
    except httpx.HTTPError as e:
        print(f"⚠️ Could not detect ngrok: {e}")
    return None


async def update_webhook(instance_name: str, base_url: Optional[str] = None) -> bool:
    if evolution_client.is_mock:
        print("❌ Missing Evolution configuration in .env")
        print("   Required: EVOLUTION_API_URL, EVOLUTION_API_KEY")
        return False

    base_url = base_url or settings.BACKEND_PUBLIC_URL or get_ngrok_url()
    if not base_url:
        print("❌ No public URL. Pass --url, set BACKEND_PUBLIC_URL or start ngrok: ngrok http 8000")
        return False

    webhook_url = f"{base_url.rstrip('/')}{WEBHOOK_INGRESS_PATH}"
    events = read_webhook_events()
    print(f"📡 Webhook endpoint: {webhook_url}")
    print(f"📋 Events: {', '.join(events)}")

    try:
        await evolution_client.set_webhook(
            instance_name,
            webhook_url,
            events,
            headers=build_webhook_headers(),
            by_events=settings.EVOLUTION_WEBHOOK_BY_EVENTS,
            base64=settings.EVOLUTION_WEBHOOK_BASE64,
        )
    except (ProviderHTTPError, httpx.HTTPError) as e:
        print(f"\n❌ Failed: {e}")
        return False
    finally:
        await http_client_manager.close()

    print("\n✅ SUCCESS! Webhook updated.")
    return True


def main() -> int:
    print("=" * 50)
    print("📱 EVOLUTION WEBHOOK UPDATER")
    print("=" * 50)

    args = sys.argv[1:]
    if not args or args[0].startswith("-"):
        print(__doc__)
        return 1

    instance_name = args[0]
    production_url = None
    if "--url" in args and args.index("--url") + 1 < len(args):
        production_url = args[args.index("--url") + 1]

    success = asyncio.run(update_webhook(instance_name, production_url))
    print("=" * 50)
    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
