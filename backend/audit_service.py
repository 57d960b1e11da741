from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class AuditService:
    """Service for immutable audit logging"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        old_values: Optional[Dict[str, Any]],
        new_values: Optional[Dict[str, Any]],
        actor_id: str,
        organization_id: str
    ) -> None:
        """
        Append an entry to the audit trail (INSERT ONLY).

        Called after the business transaction has committed; a failure here
        is logged and never undoes the committed change.
        """
        audit_entry = {
            "organization_id": organization_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action_type": action,
            "old_value_json": old_values,
            "new_value_json": new_values,
            "user_id": actor_id,
            "timestamp": datetime.utcnow()
        }

        try:
            await self.collection.insert_one(audit_entry)
            logger.info(f"Audit log created: {action} on {entity_type}:{entity_id} by user:{actor_id}")
        except PyMongoError as e:
            logger.warning(f"Failed to create audit log for {entity_type}:{entity_id}: {str(e)}")
