import os
import time
import requests

API_URL = os.getenv("ORDERDESK_URL", "http://localhost:8000")
STAFF_TOKEN = os.getenv("STAFF_TOKEN", "")
BATCH_LIMIT = int(os.getenv("REFRESH_BATCH_LIMIT", "50"))

REFRESH_INTERVAL_SEC = float(os.getenv("REFRESH_INTERVAL_SEC", "3600"))


def refresh_once(limit: int = BATCH_LIMIT) -> dict:
    headers = {"Authorization": f"Bearer {STAFF_TOKEN}"} if STAFF_TOKEN else {}
    r = requests.post(
        f"{API_URL}/api/background-sync-metafields",
        json={"limit": limit},
        headers=headers,
        timeout=120,
    )
    r.raise_for_status()
    return (r.json() or {}).get("stats") or {}


def main():
    print("Metafield refresher started.")
    while True:
        try:
            stats = refresh_once()
            print(f"Refreshed {stats.get('processed', 0)} customers, {stats.get('updated', 0)} updated")
            for err in stats.get("errors") or []:
                print("  error:", err)
            time.sleep(REFRESH_INTERVAL_SEC)
        except requests.RequestException as e:
            print("Error:", e)
            time.sleep(60)


if __name__ == "__main__":
    main()
