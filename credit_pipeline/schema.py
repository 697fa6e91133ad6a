# DDL for the pipeline tables. Applied by PipelineDB.migrate().

SQL = """
create table if not exists reports (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  file_key text not null,
  filename text not null,
  created_at timestamptz not null default now()
);

create table if not exists jobs (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  report_id uuid not null references reports(id) on delete cascade,
  status text not null check (status in ('queued','processing','complete','failed')) default 'queued',
  progress text,
  error text,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create table if not exists analysis_results (
  report_id uuid primary key references reports(id) on delete cascade,
  user_id text not null,
  result_json jsonb not null,
  created_at timestamptz not null default now()
);

create table if not exists dispute_letters (
  id uuid primary key default gen_random_uuid(),
  report_id uuid not null references reports(id) on delete cascade,
  user_id text not null,
  bureau text not null,
  file_key text not null,
  content_text text not null default '',
  created_at timestamptz not null default now()
);

create index if not exists idx_jobs_status_created on jobs(status, created_at);
create index if not exists idx_jobs_status_updated on jobs(status, updated_at);
create index if not exists idx_jobs_report on jobs(report_id);
create index if not exists idx_dispute_letters_report on dispute_letters(report_id);
"""

DROP_SQL = """
drop table if exists analysis_results cascade;
drop table if exists dispute_letters cascade;
drop table if exists jobs cascade;
drop table if exists reports cascade;
"""
