"""SQL commands used by the PostgreSQL metering store."""

CREATE_DAILY_ALLOWANCES_TABLE = """
    CREATE TABLE IF NOT EXISTS metering_daily_allowances (
        user_id         text NOT NULL,
        day             date NOT NULL,
        granted         integer NOT NULL CHECK (granted >= 0),
        remaining       integer NOT NULL CHECK (remaining >= 0 AND remaining <= granted),
        created_at      timestamp with time zone NOT NULL DEFAULT NOW(),
        updated_at      timestamp with time zone NOT NULL DEFAULT NOW(),
        PRIMARY KEY(user_id, day)
    );
    """

CREATE_CREDIT_ACCOUNTS_TABLE = """
    CREATE TABLE IF NOT EXISTS metering_credit_accounts (
        user_id         text PRIMARY KEY,
        balance         bigint NOT NULL DEFAULT 0 CHECK (balance >= 0),
        total_purchased bigint NOT NULL DEFAULT 0 CHECK (total_purchased >= 0),
        total_used      bigint NOT NULL DEFAULT 0 CHECK (total_used >= 0),
        updated_at      timestamp with time zone NOT NULL DEFAULT NOW()
    );
    """

# Accounts created before the lifetime counters existed
ADD_CREDIT_ACCOUNT_TOTALS = """
    ALTER TABLE metering_credit_accounts
        ADD COLUMN IF NOT EXISTS total_purchased bigint NOT NULL DEFAULT 0,
        ADD COLUMN IF NOT EXISTS total_used bigint NOT NULL DEFAULT 0;
    """

CREATE_CREDIT_TRANSACTIONS_TABLE = """
    CREATE TABLE IF NOT EXISTS metering_credit_transactions (
        id                  text PRIMARY KEY,
        user_id             text NOT NULL,
        amount              bigint NOT NULL,
        kind                text NOT NULL
                            CHECK (kind IN ('purchase', 'consumption', 'bonus', 'adjustment')),
        related_package_id  text,
        balance_after       bigint NOT NULL,
        description         text,
        metadata            jsonb NOT NULL DEFAULT '{}'::jsonb,
        created_at          timestamp with time zone NOT NULL DEFAULT NOW()
    );
    """

CREATE_CREDIT_TRANSACTIONS_INDEX = """
    CREATE INDEX IF NOT EXISTS idx_metering_credit_transactions_user
        ON metering_credit_transactions (user_id, created_at DESC, id DESC);
    """

CREATE_CREDIT_PACKAGES_TABLE = """
    CREATE TABLE IF NOT EXISTS metering_credit_packages (
        id              text PRIMARY KEY,
        name            text NOT NULL,
        price           numeric(10, 2) NOT NULL,
        credits         integer NOT NULL CHECK (credits >= 0),
        bonus_credits   integer NOT NULL DEFAULT 0 CHECK (bonus_credits >= 0),
        is_active       boolean NOT NULL DEFAULT true,
        description     text
    );
    """

CREATE_LEDGER_ENTRIES_TABLE = """
    CREATE TABLE IF NOT EXISTS metering_ledger_entries (
        id              text PRIMARY KEY,
        event_type      text NOT NULL,
        user_id         text,
        correlation_id  text,
        message         text NOT NULL,
        details         jsonb NOT NULL DEFAULT '{}'::jsonb,
        created_at      timestamp with time zone NOT NULL DEFAULT NOW()
    );
    """

CREATE_USAGE_METERS_TABLE = """
    CREATE TABLE IF NOT EXISTS metering_usage_meters (
        user_id         text NOT NULL,
        period_start    date NOT NULL,
        tokens_used     bigint NOT NULL DEFAULT 0 CHECK (tokens_used >= 0),
        daily_tokens    bigint NOT NULL DEFAULT 0 CHECK (daily_tokens >= 0),
        credit_tokens   bigint NOT NULL DEFAULT 0 CHECK (credit_tokens >= 0),
        requests        bigint NOT NULL DEFAULT 0 CHECK (requests >= 0),
        updated_at      timestamp with time zone NOT NULL DEFAULT NOW(),
        PRIMARY KEY(user_id, period_start)
    );
    """

SCHEMA_STATEMENTS = (
    CREATE_DAILY_ALLOWANCES_TABLE,
    CREATE_CREDIT_ACCOUNTS_TABLE,
    ADD_CREDIT_ACCOUNT_TOTALS,
    CREATE_CREDIT_TRANSACTIONS_TABLE,
    CREATE_CREDIT_TRANSACTIONS_INDEX,
    CREATE_CREDIT_PACKAGES_TABLE,
    CREATE_LEDGER_ENTRIES_TABLE,
    CREATE_USAGE_METERS_TABLE,
)


ALLOWANCE_COLUMNS = "user_id, day, granted, remaining, created_at, updated_at"

SELECT_DAILY_ALLOWANCE = f"""
    SELECT {ALLOWANCE_COLUMNS}
      FROM metering_daily_allowances
     WHERE user_id = $1 AND day = $2
    """

INSERT_DAILY_ALLOWANCE_IF_ABSENT = """
    INSERT INTO metering_daily_allowances (user_id, day, granted, remaining, created_at, updated_at)
    VALUES ($1, $2, $3, $4, $5, $6)
    ON CONFLICT (user_id, day) DO NOTHING
    """

DECREMENT_DAILY_ALLOWANCE = f"""
    UPDATE metering_daily_allowances
       SET remaining = remaining - $3, updated_at = $4
     WHERE user_id = $1 AND day = $2
       AND remaining >= $3
    RETURNING {ALLOWANCE_COLUMNS}
    """

RESET_DAILY_ALLOWANCE = f"""
    UPDATE metering_daily_allowances
       SET granted = $3, remaining = $3, updated_at = $4
     WHERE user_id = $1 AND day = $2
    RETURNING {ALLOWANCE_COLUMNS}
    """


SELECT_CREDIT_ACCOUNT = """
    SELECT user_id, balance, total_purchased, total_used, updated_at
      FROM metering_credit_accounts
     WHERE user_id = $1
    """

INCREMENT_BALANCE = """
    INSERT INTO metering_credit_accounts (user_id, balance, total_purchased, updated_at)
    VALUES ($1, $2, CASE WHEN $4 THEN $2 ELSE 0 END, $3)
    ON CONFLICT (user_id) DO UPDATE
       SET balance = metering_credit_accounts.balance + EXCLUDED.balance,
           total_purchased = metering_credit_accounts.total_purchased + EXCLUDED.total_purchased,
           updated_at = EXCLUDED.updated_at
    RETURNING balance
    """

DECREMENT_BALANCE = """
    UPDATE metering_credit_accounts
       SET balance = balance - $2,
           total_used = total_used + CASE WHEN $4 THEN $2 ELSE 0 END,
           updated_at = $3
     WHERE user_id = $1
       AND balance >= $2
    RETURNING balance
    """

# Single statement, so both values come from the same snapshot
SELECT_BALANCE_SNAPSHOT = """
    SELECT COALESCE((SELECT balance
                       FROM metering_credit_accounts
                      WHERE user_id = $1), 0)::bigint AS balance,
           COALESCE((SELECT SUM(amount)
                       FROM metering_credit_transactions
                      WHERE user_id = $1), 0)::bigint AS ledger_sum
    """

INSERT_CREDIT_ACCOUNT_IF_ABSENT = """
    INSERT INTO metering_credit_accounts (user_id, balance, updated_at)
    VALUES ($1, $2, $3)
    ON CONFLICT (user_id) DO NOTHING
    RETURNING balance
    """

REPAIR_BALANCE = """
    UPDATE metering_credit_accounts
       SET balance = $3, updated_at = $4
     WHERE user_id = $1
       AND balance = $2
    RETURNING balance
    """


TRANSACTION_COLUMNS = (
    "id, user_id, amount, kind, related_package_id, balance_after, "
    "description, metadata, created_at"
)

INSERT_CREDIT_TRANSACTION = f"""
    INSERT INTO metering_credit_transactions ({TRANSACTION_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
    """

SELECT_CREDIT_TRANSACTIONS = f"""
    SELECT {TRANSACTION_COLUMNS}
      FROM metering_credit_transactions
     WHERE user_id = $1
     ORDER BY created_at DESC, id DESC
     LIMIT $2
    """


PACKAGE_COLUMNS = "id, name, price::float8 AS price, credits, bonus_credits, is_active, description"

SELECT_CREDIT_PACKAGE = f"""
    SELECT {PACKAGE_COLUMNS}
      FROM metering_credit_packages
     WHERE id = $1
    """

SELECT_CREDIT_PACKAGES = f"""
    SELECT {PACKAGE_COLUMNS}
      FROM metering_credit_packages
     WHERE ($1::boolean IS FALSE OR is_active)
     ORDER BY price, id
    """

UPSERT_CREDIT_PACKAGE = """
    INSERT INTO metering_credit_packages (id, name, price, credits, bonus_credits, is_active, description)
    VALUES ($1, $2, $3::float8, $4, $5, $6, $7)
    ON CONFLICT (id) DO UPDATE
       SET name = EXCLUDED.name,
           price = EXCLUDED.price,
           credits = EXCLUDED.credits,
           bonus_credits = EXCLUDED.bonus_credits,
           is_active = EXCLUDED.is_active,
           description = EXCLUDED.description
    """


INSERT_LEDGER_ENTRY = """
    INSERT INTO metering_ledger_entries (id, event_type, user_id, correlation_id, message, details, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    """


USAGE_METER_COLUMNS = (
    "user_id, period_start, tokens_used, daily_tokens, credit_tokens, requests, updated_at"
)

SELECT_USAGE_METER = f"""
    SELECT {USAGE_METER_COLUMNS}
      FROM metering_usage_meters
     WHERE user_id = $1 AND period_start = $2
    """

ADD_USAGE = f"""
    INSERT INTO metering_usage_meters AS m
           (user_id, period_start, tokens_used, daily_tokens, credit_tokens, requests, updated_at)
    VALUES ($1, $2, $3::bigint + $4::bigint, $3::bigint, $4::bigint, 1, $5)
    ON CONFLICT (user_id, period_start) DO UPDATE
       SET tokens_used = m.tokens_used + EXCLUDED.tokens_used,
           daily_tokens = m.daily_tokens + EXCLUDED.daily_tokens,
           credit_tokens = m.credit_tokens + EXCLUDED.credit_tokens,
           requests = m.requests + 1,
           updated_at = EXCLUDED.updated_at
    RETURNING {USAGE_METER_COLUMNS}
    """
