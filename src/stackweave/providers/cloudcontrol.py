"""AWS Cloud Control API provider."""

import json
import uuid
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from stackweave.providers.base import BaseProvider, LiveResource, ProvisionResult
from stackweave.utils.aws_client import AWSClientManager
from stackweave.utils.errors import ErrorContext, error_handler
from stackweave.utils.logging import get_logger

logger = get_logger(__name__)


def _pointer(key: str) -> str:
    return "/" + key.replace("~", "~0").replace("/", "~1")


def _error_code(error: Exception) -> Optional[str]:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


def make_patch(previous: Dict[str, Any], desired: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Build an RFC 6902 patch turning one top-level property bag into another.

    Args:
        previous: Properties last applied
        desired: Properties to apply

    Returns:
        List of JSON Patch operations
    """
    patch = []
    for key in sorted(desired):
        if key not in previous:
            patch.append({"op": "add", "path": _pointer(key), "value": desired[key]})
        elif previous[key] != desired[key]:
            patch.append({"op": "replace", "path": _pointer(key), "value": desired[key]})
    for key in sorted(set(previous) - set(desired)):
        patch.append({"op": "remove", "path": _pointer(key)})
    return patch


class CloudControlProvider(BaseProvider):
    """Provisions any resource type supported by AWS Cloud Control.

    Every mutating call returns a request token, which is used as the
    operation handle. Tokens stay valid after a crash, so a pending
    operation can be resumed by polling its token.
    """

    def __init__(self, client_manager: AWSClientManager):
        """Initialize provider.

        Args:
            client_manager: Client manager supplying the cloudcontrol client
        """
        self.client_manager = client_manager

    @property
    def client(self):
        return self.client_manager.get_client('cloudcontrol')

    def create(self, kind: str, properties: Dict[str, Any]) -> ProvisionResult:
        try:
            response = self.client.create_resource(
                TypeName=kind,
                DesiredState=json.dumps(properties),
                ClientToken=str(uuid.uuid4())
            )
        except (ClientError, BotoCoreError) as e:
            raise self._error(e, kind, 'create')
        return self._progress(response['ProgressEvent'])

    def update(
        self,
        kind: str,
        physical_id: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any]
    ) -> ProvisionResult:
        patch = make_patch(previous, properties)
        try:
            response = self.client.update_resource(
                TypeName=kind,
                Identifier=physical_id,
                PatchDocument=json.dumps(patch),
                ClientToken=str(uuid.uuid4())
            )
        except (ClientError, BotoCoreError) as e:
            raise self._error(e, kind, 'update', physical_id)
        return self._progress(response['ProgressEvent'])

    def delete(self, kind: str, physical_id: str) -> ProvisionResult:
        try:
            response = self.client.delete_resource(
                TypeName=kind,
                Identifier=physical_id,
                ClientToken=str(uuid.uuid4())
            )
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) == "ResourceNotFoundException":
                logger.info(f"{kind} {physical_id} already deleted")
                return ProvisionResult(handle=physical_id, status='SUCCESS', physical_id=physical_id)
            raise self._error(e, kind, 'delete', physical_id)
        return self._progress(response['ProgressEvent'])

    def poll(self, kind: str, handle: str) -> ProvisionResult:
        try:
            response = self.client.get_resource_request_status(RequestToken=handle)
        except (ClientError, BotoCoreError) as e:
            raise self._error(e, kind, 'poll')

        result = self._progress(response['ProgressEvent'])
        operation = response['ProgressEvent'].get('Operation')
        if result.status == 'SUCCESS' and operation != 'DELETE' and result.physical_id:
            live = self.describe(kind, result.physical_id)
            if live is not None:
                result.outputs = live.outputs
        return result

    def describe(self, kind: str, physical_id: str) -> Optional[LiveResource]:
        try:
            response = self.client.get_resource(TypeName=kind, Identifier=physical_id)
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) == "ResourceNotFoundException":
                return None
            raise self._error(e, kind, 'describe', physical_id)

        description = response['ResourceDescription']
        properties = json.loads(description.get('Properties') or '{}')
        return LiveResource(
            physical_id=description['Identifier'],
            status='SUCCESS',
            properties=properties,
            outputs=dict(properties),
        )

    def _progress(self, event: Dict[str, Any]) -> ProvisionResult:
        status = event['OperationStatus']
        reason = event.get('StatusMessage')
        if event.get('ErrorCode'):
            reason = f"{event['ErrorCode']}: {reason or ''}".strip()

        logger.debug(
            f"Cloud Control {event.get('Operation')} {event.get('TypeName')} "
            f"{event.get('Identifier')}: {status}"
        )
        return ProvisionResult(
            handle=event['RequestToken'],
            status=status,
            physical_id=event.get('Identifier'),
            status_reason=reason if status in ('FAILED', 'CANCEL_COMPLETE') else None,
        )

    def _error(self, error: Exception, kind: str, operation: str, physical_id: Optional[str] = None):
        context = ErrorContext(resource_type=kind, operation=operation, physical_id=physical_id)
        return error_handler.handle_exception(error, context)
