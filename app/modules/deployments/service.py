from supabase import Client
from app.modules.deployments.models import DEPLOYMENTS_TABLE
from app.modules.deployments.schemas import DeploymentRecord
from typing import Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DeploymentService:
    """Reads and writes rows of the deployments table."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    @staticmethod
    def _single(result) -> Optional[DeploymentRecord]:
        # maybe_single() yields None instead of an empty response on some client versions
        if result is None or not result.data:
            return None
        data = result.data[0] if isinstance(result.data, list) else result.data
        return DeploymentRecord(**data)

    def get_deployment(self, owner_id: str, application_name: str) -> Optional[DeploymentRecord]:
        """Get the deployment for an owner's application, or None"""
        try:
            result = self.supabase.table(DEPLOYMENTS_TABLE)\
                .select("*")\
                .eq("owner_id", owner_id)\
                .eq("application_name", application_name)\
                .maybe_single()\
                .execute()
            return self._single(result)
        except Exception as e:
            logger.error(f"Error getting deployment {owner_id}/{application_name}: {str(e)}")
            raise

    def ensure_deployment(self, owner_id: str, application_name: str) -> DeploymentRecord:
        """
        Insert the (owner, application) row if missing; otherwise only touch updated_at.
        Resource identity and status columns of an existing row are left alone.
        """
        try:
            result = self.supabase.table(DEPLOYMENTS_TABLE)\
                .upsert(
                    {"owner_id": owner_id, "application_name": application_name, "updated_at": _now()},
                    on_conflict="owner_id,application_name",
                )\
                .execute()
            record = self._single(result)
            if record is None:
                # Upsert answered without a representation; read the row back
                record = self.get_deployment(owner_id, application_name)
            if record is None:
                raise RuntimeError(f"Failed to create deployment for {owner_id}/{application_name}")
            return record
        except Exception as e:
            logger.error(f"Error upserting deployment {owner_id}/{application_name}: {str(e)}")
            raise

    def set_resource(
        self,
        deployment_id: int,
        resource_name: str,
        resource_url: str,
        deploy_status: Optional[str] = None,
    ) -> None:
        """Persist resource identity (and optionally reset the status) for a deployment row"""
        update_data = {
            "resource_name": resource_name,
            "resource_url": resource_url or "",
            "updated_at": _now(),
        }
        if deploy_status:
            update_data["deploy_status"] = deploy_status
            update_data["deploy_error"] = None
        try:
            self.supabase.table(DEPLOYMENTS_TABLE)\
                .update(update_data)\
                .eq("id", deployment_id)\
                .execute()
        except Exception as e:
            logger.error(f"Error saving resource identity for deployment {deployment_id}: {str(e)}")
            raise

    def update_deploy_status(self, resource_name: str, deploy_status: str, deploy_error: Optional[str] = None) -> None:
        """Set deploy_status (and deploy_error, cleared unless given) for the row owning resource_name"""
        try:
            self.supabase.table(DEPLOYMENTS_TABLE)\
                .update({
                    "deploy_status": deploy_status,
                    "deploy_error": deploy_error,
                    "updated_at": _now(),
                })\
                .eq("resource_name", resource_name)\
                .execute()
        except Exception as e:
            logger.error(f"Error updating deploy status for {resource_name}: {str(e)}")
            raise
