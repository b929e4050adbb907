from supabase import Client, create_client
from supabase.client import ClientOptions

from src.config import settings


supabase: Client = create_client(
    settings.supabase_url,
    settings.supabase_service_role_key,
    options=ClientOptions(postgrest_client_timeout=settings.ledger_timeout_seconds),
)
