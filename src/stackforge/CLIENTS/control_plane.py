# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Client for the CloudFormation control plane and the S3/ECR stores its stacks own.
This is the only module that talks to AWS; everything else works on the models it returns.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from ..exceptions import (
    ChangeSetCreateFailed,
    ChangeSetEmpty,
    ControlPlaneError,
    OperationTimeout,
    TemplateValidationError,
    TransientNetworkError,
)
from ..MODELS.change_set import Change, ChangeAction, ChangeSet, ChangeSetStatus
from ..MODELS.stack import REVIEW_IN_PROGRESS, Operation, OperationHandle, Stack, StackStatus, map_cloudformation_status
from ..MODELS.sweep import RESOURCE_TYPES, SweepKind

logger = structlog.get_logger(__name__)

CONNECTION_ERRORS = (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "RequestTimeout",
    "ServiceUnavailable",
    "InternalFailure",
    "InternalError",
    "SlowDown",
}

# Upper bounds per batch deletion call imposed by S3 and ECR.
MAX_DELETE_OBJECTS = 1000
MAX_DELETE_IMAGES = 100

DEFAULT_CAPABILITIES = ["CAPABILITY_NAMED_IAM"]

CHANGE_ACTIONS = {
    "Add": ChangeAction.ADD,
    "Modify": ChangeAction.MODIFY,
    "Remove": ChangeAction.REMOVE,
    "Import": ChangeAction.IMPORT,
    "Dynamic": ChangeAction.DYNAMIC,
    "SyncWithActual": ChangeAction.SYNC,
}

EMPTY_CHANGE_SET_REASONS = (
    "didn't contain changes",
    "No updates are to be performed",
)


@dataclass
class ObjectVersionPage:
    """One page of object versions and delete markers from a bucket."""

    entries: List[Dict[str, str]] = field(default_factory=list)
    truncated: bool = False
    next_key_marker: Optional[str] = None
    next_version_marker: Optional[str] = None


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", "")


def is_missing_stack(error: ControlPlaneError) -> bool:
    return error.code == "ValidationError" and "does not exist" in error.message


def is_empty_change_set_reason(reason: Optional[str]) -> bool:
    return bool(reason) and any(marker in reason for marker in EMPTY_CHANGE_SET_REASONS)


class ControlPlaneClient:
    """
    Narrow adapter over CloudFormation, S3 and ECR.

    Every call is retried on transient failures with exponential backoff. Mutating
    calls carry a request token that is generated once per logical operation, so a
    retried delivery is recognised by the control plane instead of applied twice.
    """

    def __init__(
        self,
        region: str,
        capabilities: Optional[List[str]] = None,
        tags: Optional[Dict[str, str]] = None,
        max_attempts: int = 5,
        poll_interval: float = 5.0,
        max_poll_interval: float = 30.0,
        session: Optional[Any] = None,
        cloudformation: Optional[Any] = None,
        s3: Optional[Any] = None,
        ecr: Optional[Any] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            region: AWS region the stacks live in.
            capabilities: Capabilities acknowledged on create and change set calls.
            tags: Tags applied to every stack created or updated.
            max_attempts: Attempts per call before a transient failure is surfaced.
            poll_interval: First delay between status polls, doubled up to max_poll_interval.
            max_poll_interval: Upper bound for poll and retry delays.
            session: boto3 session to build clients from.
            cloudformation, s3, ecr: Pre-built clients, mainly for tests.
            sleep: Sleep function used between polls and retries.
        """
        self.region = region
        self.capabilities = list(capabilities) if capabilities else list(DEFAULT_CAPABILITIES)
        self.tags = dict(tags or {})
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self._session = session
        self._clients: Dict[str, Any] = {}
        if cloudformation is not None:
            self._clients["cloudformation"] = cloudformation
        if s3 is not None:
            self._clients["s3"] = s3
        if ecr is not None:
            self._clients["ecr"] = ecr
        self._sleep = sleep

    def _client(self, service: str) -> Any:
        """Lazy initialization of boto3 clients."""
        if service not in self._clients:
            session = self._session or boto3.session.Session(region_name=self.region)
            # Retries are handled here, not by botocore.
            config = Config(retries={"max_attempts": 1, "mode": "standard"})
            self._clients[service] = session.client(service, region_name=self.region, config=config)
        return self._clients[service]

    @property
    def cloudformation(self) -> Any:
        return self._client("cloudformation")

    @property
    def s3(self) -> Any:
        return self._client("s3")

    @property
    def ecr(self) -> Any:
        return self._client("ecr")

    # ------------------------------------------------------------------
    # Call plumbing
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable[..., Dict[str, Any]], **kwargs) -> Dict[str, Any]:
        """Invoke a client method, retrying transient failures."""

        def attempt():
            try:
                return fn(**kwargs)
            except CONNECTION_ERRORS as e:
                raise TransientNetworkError(f"{operation}: {e}") from e
            except ClientError as e:
                http_status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
                if error_code(e) in TRANSIENT_ERROR_CODES or http_status >= 500:
                    raise TransientNetworkError(f"{operation}: {e}") from e
                raise ControlPlaneError(operation, error_code(e), error_message(e)) from e
            except BotoCoreError as e:
                raise ControlPlaneError(operation, type(e).__name__, str(e)) from e

        retrying = Retrying(
            retry=retry_if_exception_type(TransientNetworkError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, max=self.max_poll_interval),
            sleep=self._sleep,
            before_sleep=self._log_retry(operation),
            reraise=True,
        )
        return retrying(attempt)

    @staticmethod
    def _log_retry(operation: str):
        def before_sleep(retry_state):
            logger.warning(
                "Retrying control plane call",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()),
            )

        return before_sleep

    @staticmethod
    def _token(operation: str) -> str:
        return f"stackforge-{operation}-{uuid.uuid4().hex}"

    @staticmethod
    def _parameters(parameters: Dict[str, str]) -> List[Dict[str, str]]:
        return [{"ParameterKey": k, "ParameterValue": str(v)} for k, v in parameters.items()]

    def _tags(self, tags: Optional[Dict[str, str]]) -> List[Dict[str, str]]:
        merged = dict(self.tags)
        merged.update(tags or {})
        return [{"Key": k, "Value": v} for k, v in merged.items()]

    def _poll(self, poll: Callable[[], Any], pending: Callable[[Any], bool], timeout: float) -> Any:
        """Poll until `pending` turns false. Raises RetryError on timeout."""
        retrying = Retrying(
            retry=retry_if_result(pending),
            stop=stop_after_delay(timeout),
            wait=wait_exponential(multiplier=self.poll_interval, max=self.max_poll_interval),
            sleep=self._sleep,
        )
        return retrying(poll)

    # ------------------------------------------------------------------
    # Stacks
    # ------------------------------------------------------------------

    def describe_stack(self, name: str, stack_id: Optional[str] = None) -> Stack:
        """
        Describe a stack. A stack the control plane does not know is returned with status absent.

        Args:
            name: Qualified stack name.
            stack_id: Stack ARN; lets deleted stacks be described.
        """
        try:
            response = self._call(
                "DescribeStacks", self.cloudformation.describe_stacks, StackName=stack_id or name
            )
        except ControlPlaneError as e:
            if is_missing_stack(e):
                return Stack(name=name, status=StackStatus.ABSENT)
            raise

        stacks = response.get("Stacks", [])
        if not stacks:
            return Stack(name=name, status=StackStatus.ABSENT)
        return self._to_stack(name, stacks[0])

    @staticmethod
    def _to_stack(name: str, data: Dict[str, Any]) -> Stack:
        raw_status = data.get("StackStatus")
        status = map_cloudformation_status(raw_status)
        parameters = {
            p["ParameterKey"]: p.get("ParameterValue", "") for p in data.get("Parameters", []) or []
        }
        outputs = {}
        if status in (StackStatus.CREATE_COMPLETE, StackStatus.UPDATE_COMPLETE):
            outputs = {o["OutputKey"]: o.get("OutputValue", "") for o in data.get("Outputs", []) or []}
        return Stack(
            name=name,
            parameters=parameters,
            status=status,
            outputs=outputs,
            stack_id=data.get("StackId"),
            raw_status=raw_status,
            status_reason=data.get("StackStatusReason"),
        )

    def validate_template(self, name: str, template_body: str) -> None:
        """Ask the control plane to validate a template before it is used for `name`."""
        try:
            self._call("ValidateTemplate", self.cloudformation.validate_template, TemplateBody=template_body)
        except ControlPlaneError as e:
            raise TemplateValidationError(name, "invalid_template", reason=e.message) from e

    def create_stack(
        self,
        name: str,
        template_body: str,
        parameters: Dict[str, str],
        tags: Optional[Dict[str, str]] = None,
    ) -> OperationHandle:
        token = self._token("create")
        response = self._call(
            "CreateStack",
            self.cloudformation.create_stack,
            StackName=name,
            TemplateBody=template_body,
            Parameters=self._parameters(parameters),
            Capabilities=self.capabilities,
            Tags=self._tags(tags),
            ClientRequestToken=token,
        )
        logger.info("Stack create issued", stack=name, stack_id=response.get("StackId"))
        return OperationHandle(
            stack_name=name, operation=Operation.CREATE, stack_id=response.get("StackId"), request_token=token
        )

    def update_stack(
        self,
        name: str,
        template_body: str,
        parameters: Dict[str, str],
        tags: Optional[Dict[str, str]] = None,
    ) -> OperationHandle:
        """
        Issue a direct update, bypassing change set review. Stack updates made by
        the lifecycle always go through change sets instead.

        Raises:
            ChangeSetEmpty: If the control plane reports there is nothing to update.
        """
        token = self._token("update")
        try:
            response = self._call(
                "UpdateStack",
                self.cloudformation.update_stack,
                StackName=name,
                TemplateBody=template_body,
                Parameters=self._parameters(parameters),
                Capabilities=self.capabilities,
                Tags=self._tags(tags),
                ClientRequestToken=token,
            )
        except ControlPlaneError as e:
            if is_empty_change_set_reason(e.message):
                raise ChangeSetEmpty(e.message, stack_name=name, status=StackStatus.NO_UPDATES.value) from e
            raise
        return OperationHandle(
            stack_name=name, operation=Operation.UPDATE, stack_id=response.get("StackId"), request_token=token
        )

    def delete_stack(self, name: str, stack_id: Optional[str] = None) -> OperationHandle:
        token = self._token("delete")
        self._call(
            "DeleteStack",
            self.cloudformation.delete_stack,
            StackName=stack_id or name,
            ClientRequestToken=token,
        )
        logger.info("Stack delete issued", stack=name)
        return OperationHandle(stack_name=name, operation=Operation.DELETE, stack_id=stack_id, request_token=token)

    def wait_for_completion(self, handle: OperationHandle, timeout: float) -> Stack:
        """
        Poll a stack until it leaves its in-progress state.

        Args:
            handle: Operation to wait on.
            timeout: Seconds to wait before giving up.

        Returns:
            The stack in its terminal status.

        Raises:
            OperationTimeout: If the stack is still in progress after `timeout`.
        """

        def poll() -> Stack:
            stack = self.describe_stack(handle.stack_name, stack_id=handle.stack_id)
            if handle.operation is Operation.DELETE and stack.status is StackStatus.ABSENT:
                stack = stack.model_copy(update={"status": StackStatus.DELETE_COMPLETE})
            logger.debug("Polled stack", stack=handle.stack_name, status=stack.raw_status or stack.status.value)
            return stack

        try:
            stack = self._poll(poll, lambda s: self._still_running(handle, s), timeout)
        except RetryError as e:
            last = e.last_attempt.result()
            raise OperationTimeout(handle.stack_name, handle.operation.value, timeout, last.describe_status()) from e
        logger.info("Stack reached terminal status", stack=handle.stack_name, status=stack.describe_status())
        return stack

    @staticmethod
    def _still_running(handle: OperationHandle, stack: Stack) -> bool:
        # A create executed from a review change set may still report the review status.
        if handle.operation is Operation.CREATE and stack.raw_status == REVIEW_IN_PROGRESS:
            return True
        return stack.status.in_progress

    def list_child_resources(self, name: str, kind: SweepKind) -> List[str]:
        """
        Physical ids of the stack's live resources of one sweepable kind.
        """
        resource_type = RESOURCE_TYPES[kind]
        resource_ids: List[str] = []
        kwargs: Dict[str, Any] = {"StackName": name}
        while True:
            try:
                response = self._call("ListStackResources", self.cloudformation.list_stack_resources, **kwargs)
            except ControlPlaneError as e:
                if is_missing_stack(e):
                    return []
                raise
            for summary in response.get("StackResourceSummaries", []):
                if summary.get("ResourceType") != resource_type:
                    continue
                if summary.get("ResourceStatus") == "DELETE_COMPLETE" or not summary.get("PhysicalResourceId"):
                    continue
                resource_ids.append(summary["PhysicalResourceId"])
            if not response.get("NextToken"):
                return resource_ids
            kwargs["NextToken"] = response["NextToken"]

    # ------------------------------------------------------------------
    # Change sets
    # ------------------------------------------------------------------

    def create_change_set(
        self,
        name: str,
        template_body: str,
        parameters: Dict[str, str],
        change_set_name: str,
        tags: Optional[Dict[str, str]] = None,
        change_set_type: str = "UPDATE",
    ) -> ChangeSet:
        """
        Propose a change set against a stack.

        Args:
            change_set_type: UPDATE for a live stack, CREATE for a stack still in review.
        """
        response = self._call(
            "CreateChangeSet",
            self.cloudformation.create_change_set,
            StackName=name,
            ChangeSetName=change_set_name,
            ChangeSetType=change_set_type,
            TemplateBody=template_body,
            Parameters=self._parameters(parameters),
            Capabilities=self.capabilities,
            Tags=self._tags(tags),
            ClientToken=self._token("changeset"),
        )
        logger.info("Change set created", stack=name, change_set=change_set_name)
        return ChangeSet(id=response["Id"], name=change_set_name, stack_name=name)

    def describe_change_set(self, change_set_id: str, stack_name: Optional[str] = None) -> ChangeSet:
        kwargs: Dict[str, Any] = {"ChangeSetName": change_set_id}
        if stack_name:
            kwargs["StackName"] = stack_name
        changes: List[Change] = []
        while True:
            response = self._call("DescribeChangeSet", self.cloudformation.describe_change_set, **kwargs)
            for change in response.get("Changes", []):
                if change.get("Type") != "Resource":
                    continue
                resource = change["ResourceChange"]
                action = CHANGE_ACTIONS.get(resource.get("Action"))
                if action is None:
                    raise ControlPlaneError(
                        "DescribeChangeSet",
                        "UnknownChangeAction",
                        f"unrecognised action {resource.get('Action')!r} for {resource.get('LogicalResourceId')}",
                        stack_name=stack_name or response.get("StackName"),
                    )
                changes.append(
                    Change(
                        action=action,
                        resource_id=resource.get("LogicalResourceId", ""),
                        resource_type=resource.get("ResourceType", ""),
                        replacement=resource.get("Replacement"),
                    )
                )
            if not response.get("NextToken"):
                break
            kwargs["NextToken"] = response["NextToken"]

        raw_status = response.get("Status", "")
        if raw_status in ("CREATE_PENDING", "CREATE_IN_PROGRESS"):
            status = ChangeSetStatus.PENDING
        elif raw_status == "CREATE_COMPLETE":
            status = ChangeSetStatus.READY
        else:
            status = ChangeSetStatus.FAILED
        return ChangeSet(
            id=response.get("ChangeSetId", change_set_id),
            name=response.get("ChangeSetName", change_set_id),
            stack_name=stack_name or response.get("StackName", ""),
            status=status,
            status_reason=response.get("StatusReason"),
            changes=changes,
        )

    def wait_for_change_set(self, change_set: ChangeSet, timeout: float) -> ChangeSet:
        """
        Wait until a change set is ready for review.

        Raises:
            ChangeSetEmpty: The control plane rejected it because nothing would change.
            ChangeSetCreateFailed: The control plane rejected it for any other reason.
            OperationTimeout: It was still pending after `timeout`.
        """
        try:
            ready = self._poll(
                lambda: self.describe_change_set(change_set.id, change_set.stack_name),
                lambda cs: not cs.status.is_terminal,
                timeout,
            )
        except RetryError as e:
            raise OperationTimeout(change_set.stack_name, "change set", timeout, ChangeSetStatus.PENDING.value) from e

        if ready.status is ChangeSetStatus.FAILED:
            if is_empty_change_set_reason(ready.status_reason):
                raise ChangeSetEmpty(
                    ready.status_reason, stack_name=ready.stack_name, status=StackStatus.NO_UPDATES.value
                )
            raise ChangeSetCreateFailed(ready.stack_name, "change_set_failed", reason=ready.status_reason)
        return ready

    def execute_change_set(
        self, change_set: ChangeSet, stack_id: Optional[str] = None, operation: Operation = Operation.UPDATE
    ) -> OperationHandle:
        token = self._token("execute")
        self._call(
            "ExecuteChangeSet",
            self.cloudformation.execute_change_set,
            ChangeSetName=change_set.id,
            ClientRequestToken=token,
        )
        logger.info("Change set executed", stack=change_set.stack_name, change_set=change_set.name)
        return OperationHandle(
            stack_name=change_set.stack_name, operation=operation, stack_id=stack_id, request_token=token
        )

    def delete_change_set(self, change_set: ChangeSet) -> None:
        try:
            self._call("DeleteChangeSet", self.cloudformation.delete_change_set, ChangeSetName=change_set.id)
        except ControlPlaneError as e:
            if e.code != "ChangeSetNotFound":
                raise
        logger.info("Change set deleted", stack=change_set.stack_name, change_set=change_set.name)

    # ------------------------------------------------------------------
    # Object stores
    # ------------------------------------------------------------------

    def list_object_versions(
        self,
        bucket: str,
        max_keys: int = MAX_DELETE_OBJECTS,
        key_marker: Optional[str] = None,
        version_marker: Optional[str] = None,
    ) -> Optional[ObjectVersionPage]:
        """
        List one page of object versions and delete markers.

        Returns:
            The page, or None if the bucket does not exist.
        """
        kwargs: Dict[str, Any] = {"Bucket": bucket, "MaxKeys": max_keys}
        if key_marker is not None:
            kwargs["KeyMarker"] = key_marker
        if version_marker is not None:
            kwargs["VersionIdMarker"] = version_marker
        try:
            response = self._call("ListObjectVersions", self.s3.list_object_versions, **kwargs)
        except ControlPlaneError as e:
            if e.code == "NoSuchBucket":
                return None
            raise

        entries = [
            {"Key": item["Key"], "VersionId": item.get("VersionId") or "null"}
            for item in response.get("Versions", []) + response.get("DeleteMarkers", [])
        ]
        return ObjectVersionPage(
            entries=entries,
            truncated=bool(response.get("IsTruncated")),
            next_key_marker=response.get("NextKeyMarker"),
            next_version_marker=response.get("NextVersionIdMarker"),
        )

    def delete_object_versions(self, bucket: str, entries: List[Dict[str, str]]) -> List[Tuple[str, str]]:
        """
        Delete specific object versions and delete markers.

        Returns:
            (key@version, reason) for every entry the store refused to delete.
        """
        if len(entries) > MAX_DELETE_OBJECTS:
            raise ValueError(f"At most {MAX_DELETE_OBJECTS} objects can be deleted per call")
        if not entries:
            return []
        try:
            response = self._call(
                "DeleteObjects",
                self.s3.delete_objects,
                Bucket=bucket,
                Delete={"Objects": entries, "Quiet": True},
            )
        except ControlPlaneError as e:
            if e.code == "NoSuchBucket":
                return []
            raise
        return [
            (f"{err.get('Key')}@{err.get('VersionId', 'null')}", f"{err.get('Code')}: {err.get('Message')}")
            for err in response.get("Errors", [])
        ]

    # ------------------------------------------------------------------
    # Image repositories
    # ------------------------------------------------------------------

    def list_image_ids(self, repository: str) -> Optional[List[Dict[str, str]]]:
        """
        All image identifiers stored in a repository.

        Returns:
            The identifiers, or None if the repository does not exist.
        """
        image_ids: List[Dict[str, str]] = []
        kwargs: Dict[str, Any] = {"repositoryName": repository, "maxResults": 1000}
        while True:
            try:
                response = self._call("ListImages", self.ecr.list_images, **kwargs)
            except ControlPlaneError as e:
                if e.code == "RepositoryNotFoundException":
                    return None
                raise
            image_ids.extend(response.get("imageIds", []))
            if not response.get("nextToken"):
                return image_ids
            kwargs["nextToken"] = response["nextToken"]

    def batch_delete_images(self, repository: str, image_ids: List[Dict[str, str]]) -> List[Tuple[str, str]]:
        """
        Delete images by identifier.

        Returns:
            (image, reason) for every image the registry refused to delete.
        """
        if len(image_ids) > MAX_DELETE_IMAGES:
            raise ValueError(f"At most {MAX_DELETE_IMAGES} images can be deleted per call")
        if not image_ids:
            return []
        try:
            response = self._call(
                "BatchDeleteImage", self.ecr.batch_delete_image, repositoryName=repository, imageIds=image_ids
            )
        except ControlPlaneError as e:
            if e.code == "RepositoryNotFoundException":
                return []
            raise
        failures = []
        for failure in response.get("failures", []):
            image = failure.get("imageId", {})
            ident = image.get("imageDigest") or image.get("imageTag") or "?"
            # Deleting an image that is already gone is not a failure.
            if failure.get("failureCode") == "ImageNotFound":
                continue
            failures.append((ident, f"{failure.get('failureCode')}: {failure.get('failureReason')}"))
        return failures
