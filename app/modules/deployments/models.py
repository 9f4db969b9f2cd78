# Supabase table: deployments
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py
#
# DDL: app/database/migrations/001_create_deployments.sql (idempotent, re-runnable)

"""
Expected Supabase table structure:
- id: bigserial (primary key) - also the suffix of resource_name
- owner_id: text (not null) - caller identity from the auth layer
- application_name: text (not null) - unique together with owner_id
- resource_name: text (not null, default: '') - backend identifier, set once by prepare
- resource_url: text (not null, default: '') - public endpoint, may stay empty until assigned
- deploy_status: text (not null, default: 'preparing') - values: preparing, building, deployed, idle, error
- deploy_error: text (nullable) - trailing build output when deploy_status is error
- created_at: timestamptz (default: now())
- updated_at: timestamptz (default: now())
"""

DEPLOYMENTS_TABLE = "deployments"

DEPLOY_STATUS_PREPARING = "preparing"
DEPLOY_STATUS_BUILDING = "building"
DEPLOY_STATUS_DEPLOYED = "deployed"
DEPLOY_STATUS_IDLE = "idle"
DEPLOY_STATUS_ERROR = "error"

# Statuses reported to callers by the reconciler
STATUS_NOT_FOUND = "not_found"
STATUS_PREPARING = "preparing"
STATUS_BUILDING = "building"
STATUS_BUILD_ERROR = "build_error"
STATUS_STARTING = "starting"
STATUS_RUNNING = "running"
