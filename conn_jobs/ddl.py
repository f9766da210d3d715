"""Database schema DDL for the connection job engine."""

JOBS_TABLE_DDL = """
CREATE TABLE jobs (
  id             UUID PRIMARY KEY,
  connection_id  TEXT NOT NULL,
  type           TEXT NOT NULL,

  status         TEXT NOT NULL CHECK (status IN ('queued', 'running', 'retrying', 'success', 'failed')),
  params         JSONB NOT NULL DEFAULT '{}'::jsonb,
  attempts       INT NOT NULL DEFAULT 0,

  started_at     TIMESTAMPTZ,
  finished_at    TIMESTAMPTZ,
  summary        JSONB,
  error          TEXT,

  created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at     TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_jobs_connection_status
ON jobs (connection_id, status);

CREATE INDEX idx_jobs_connection_created
ON jobs (connection_id, created_at DESC);
"""

COMMANDS_TABLE_DDL = """
CREATE TABLE commands (
  id               UUID PRIMARY KEY,
  connection_id    TEXT NOT NULL,
  command_type     TEXT NOT NULL,
  idempotency_key  TEXT NOT NULL,

  status           TEXT NOT NULL DEFAULT 'queued' CHECK (status IN ('queued', 'succeeded', 'failed')),
  request          JSONB NOT NULL,
  response         JSONB,
  error            TEXT,
  job_id           UUID,

  created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE UNIQUE INDEX uq_commands_connection_idempotency_key
ON commands (connection_id, idempotency_key);

CREATE INDEX idx_commands_status
ON commands (status);
"""

WEBHOOK_EVENTS_TABLE_DDL = """
CREATE TABLE webhook_events (
  id             UUID PRIMARY KEY,
  connection_id  TEXT NOT NULL,
  provider       TEXT NOT NULL,
  event_key      TEXT NOT NULL,
  body_hash      TEXT NOT NULL,
  payload        JSONB,
  dedup_hit      BOOLEAN NOT NULL DEFAULT FALSE,
  job_id         UUID,

  received_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE UNIQUE INDEX uq_webhook_events_event_key
ON webhook_events (event_key);

CREATE INDEX idx_webhook_events_connection_received
ON webhook_events (connection_id, received_at);
"""

SYNC_STATE_TABLE_DDL = """
CREATE TABLE sync_state (
  connection_id    TEXT NOT NULL,
  job_type         TEXT NOT NULL,
  last_success_at  TIMESTAMPTZ,
  last_attempt_at  TIMESTAMPTZ,
  last_status      TEXT CHECK (last_status IN ('RUNNING', 'SUCCESS', 'RETRYING', 'FAIL')),
  last_job_id      UUID,
  last_error       TEXT,
  updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  PRIMARY KEY (connection_id, job_type)
);
"""

ALL_TABLES_DDL = "\n".join(
    [
        JOBS_TABLE_DDL,
        COMMANDS_TABLE_DDL,
        WEBHOOK_EVENTS_TABLE_DDL,
        SYNC_STATE_TABLE_DDL,
    ]
)
