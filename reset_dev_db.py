#!/usr/bin/env python3
"""
Reset development database - creates a fresh schema and seeds a demo group.
Run from the repository root.
"""
import asyncio
import os
import sys
from pathlib import Path

repo_dir = Path(__file__).parent
os.chdir(repo_dir)

# Always target the local sqlite dev DB for this script.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./otc-desk-dev.db"

from otc_desk.database import engine, init_models
from otc_desk.runtime import build_runtime

DEMO_GROUP = os.getenv("DEMO_GROUP_JID", "120363000000000000@g.us")
DEMO_OPERATOR = os.getenv("DEMO_OPERATOR_JID", "5511900000000@s.whatsapp.net")

DEMO_RULES = [
    {
        "name": "Horário comercial",
        "schedule_start_time": "09:00",
        "schedule_end_time": "18:00",
        "schedule_days": ["mon", "tue", "wed", "thu", "fri"],
        "priority": 10,
        "pricing_source": "usdt_binance",
        "spread_mode": "bps",
        "sell_spread": 40,
        "buy_spread": -30,
    },
    {
        "name": "Fora do horário",
        "schedule_start_time": "18:00",
        "schedule_end_time": "09:00",
        "schedule_days": ["mon", "tue", "wed", "thu", "fri", "sat", "sun"],
        "priority": 5,
        "pricing_source": "commercial_dollar",
        "spread_mode": "abs_brl",
        "sell_spread": 0.08,
        "buy_spread": -0.06,
    },
]


async def main() -> int:
    db_path = repo_dir / "otc-desk-dev.db"

    if db_path.exists():
        print(f"Removing existing database: {db_path}")
        db_path.unlink()

    print("Creating database tables...")
    await init_models()
    print("✅ Tables created")

    rt = build_runtime()
    try:
        saved = await rt.spreads.upsert_config(
            DEMO_GROUP, {"operator_jid": DEMO_OPERATOR, "quote_ttl_seconds": 180}
        )
        if not saved.ok:
            print(f"Spread config failed: {saved.error.message}", file=sys.stderr)
            return 1
        print(f"✅ Spread config for {DEMO_GROUP} (operator {DEMO_OPERATOR})")

        for fields in DEMO_RULES:
            created = await rt.rules.create_rule(DEMO_GROUP, fields)
            if not created.ok:
                print(f"Rule {fields['name']!r} failed: {created.error.message}", file=sys.stderr)
                return 1
            print(f"  Created rule: {created.value.name} (priority {created.value.priority})")

        print("\n🎉 Development database reset complete!")
        print(f"   Database: {db_path}")
        return 0
    finally:
        await engine.dispose()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
