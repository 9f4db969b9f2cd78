"""
Supabase clients.

The anon-key client only resolves bearer tokens for the deploy routes. The deployments table
is read and written through the service-role client: build completions arrive on worker
threads with no caller session, so row-level security cannot apply to them.
"""
import logging

from supabase import create_client, Client
from app.config import settings

logger = logging.getLogger(__name__)


class SupabaseClient:
    _auth_client: Client = None
    _service_client: Client = None

    @staticmethod
    def _create(key: str) -> Client:
        if not settings.supabase_url or not key:
            raise ValueError("SUPABASE_URL and a Supabase key must be configured")
        return create_client(settings.supabase_url, key)

    @classmethod
    def get_client(cls) -> Client:
        """Anon-key client used for Supabase Auth lookups"""
        if cls._auth_client is None:
            cls._auth_client = cls._create(settings.supabase_key)
        return cls._auth_client

    @classmethod
    def get_service_client(cls) -> Client:
        """Client for the deployments table; falls back to the anon key when no service key is set"""
        if cls._service_client is None:
            if settings.supabase_service_role_key:
                cls._service_client = cls._create(settings.supabase_service_role_key)
            else:
                logger.warning("SUPABASE_SERVICE_ROLE_KEY not set; deployments table uses the anon key")
                cls._service_client = cls.get_client()
        return cls._service_client

    @classmethod
    def reset_client(cls):
        cls._auth_client = None
        cls._service_client = None


def get_supabase() -> Client:
    return SupabaseClient.get_client()
