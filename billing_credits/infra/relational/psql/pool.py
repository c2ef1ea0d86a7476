# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/relational/psql/pool.py
import json
from typing import Optional

import asyncpg

from billing_credits.config import Settings, get_settings


async def _init_conn(conn: asyncpg.Connection):
    # Encode/decode json & jsonb as Python dicts automatically
    await conn.set_type_codec('json',  encoder=json.dumps, decoder=json.loads, schema='pg_catalog')
    await conn.set_type_codec('jsonb', encoder=json.dumps, decoder=json.loads, schema='pg_catalog')


async def create_pg_pool(settings: Optional[Settings] = None, **pool_kwargs) -> asyncpg.Pool:
    s = settings or get_settings()
    return await asyncpg.create_pool(
        host=s.PGHOST,
        port=s.PGPORT,
        user=s.PGUSER,
        password=s.PGPASSWORD,
        database=s.PGDATABASE,
        ssl=s.PGSSL,
        init=_init_conn,
        **pool_kwargs,
    )
