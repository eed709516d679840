"""Shared pytest fixtures: an in-memory CloudFormation, S3 and ECR."""

import copy
import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from stackforge.CLIENTS.control_plane import ControlPlaneClient
from stackforge.MANAGERS.change_preview import ChangePreviewEngine
from stackforge.MANAGERS.lifecycle import StackLifecycle
from stackforge.MANAGERS.resource_sweeper import ResourceSweeper
from stackforge.UTILS.confirmation import AutoConfirmer

ACCOUNT = "123456789012"
REGION = "us-east-1"

NO_CHANGES_REASON = (
    "The submitted information didn't contain changes. Submit different information to create a change set."
)


def client_error(code: str, message: str = "", operation: str = "Operation", http_status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message}, "ResponseMetadata": {"HTTPStatusCode": http_status}},
        operation,
    )


def connection_error() -> EndpointConnectionError:
    return EndpointConnectionError(endpoint_url=f"https://cloudformation.{REGION}.amazonaws.com")


class FakeCloud:
    """
    Shared state behind the three fake clients.

    Stacks move through one in-progress status per describe call before landing
    on their final status, so every wait really polls.
    """

    def __init__(self):
        self.stacks: Dict[str, Dict[str, Any]] = {}
        self.deleted: Dict[str, Dict[str, Any]] = {}
        self.change_sets: Dict[str, Dict[str, Any]] = {}
        self.buckets: Dict[str, List[Dict[str, Any]]] = {}
        self.repositories: Dict[str, List[Dict[str, str]]] = {}

        # Outputs a stack reports once its create or update lands.
        self.outputs: Dict[str, Dict[str, str]] = {}
        # Child resources per stack: (resource type, physical id).
        self.resources: Dict[str, List[tuple]] = defaultdict(list)
        # Forced final CloudFormation status per (stack, operation).
        self.outcomes: Dict[tuple, str] = {}
        # Resource changes reported by a change set, per stack.
        self.change_plan: Dict[str, List[Dict[str, Any]]] = {}
        # Stacks whose in-flight operation never finishes.
        self.stuck = set()
        # Object keys and image digests the stores refuse to delete.
        self.undeletable_keys = set()
        self.undeletable_digests = set()

        self.calls: List[tuple] = []
        self._failures: Dict[str, List[tuple]] = defaultdict(list)
        self._tokens: Dict[str, str] = {}
        self.list_page_size = 1000

        self.cloudformation = FakeCloudFormation(self)
        self.s3 = FakeS3(self)
        self.ecr = FakeECR(self)

    # -- failure injection ---------------------------------------------

    def fail(self, operation: str, error: Exception, times: int = 1, after: bool = False):
        """Make the next `times` calls of an operation raise; with after=True the call still lands first."""
        for _ in range(times):
            self._failures[operation].append((error, after))

    def record(self, operation: str, **kwargs):
        self.calls.append((operation, kwargs))
        if self._failures[operation] and not self._failures[operation][0][1]:
            error, _ = self._failures[operation].pop(0)
            raise error

    def after(self, operation: str):
        if self._failures[operation] and self._failures[operation][0][1]:
            error, _ = self._failures[operation].pop(0)
            raise error

    def called(self, operation: str) -> List[Dict[str, Any]]:
        return [kwargs for op, kwargs in self.calls if op == operation]

    # -- seeding -------------------------------------------------------

    def seed_stack(self, name: str, status: str = "CREATE_COMPLETE", template: str = "{}",
                   parameters: Optional[Dict[str, str]] = None, outputs: Optional[Dict[str, str]] = None):
        record = self._new_stack(name, template, parameters or {})
        record["StackStatus"] = status
        record["Outputs"] = dict(outputs or {})
        self.stacks[name] = record
        return record

    def put_versions(self, bucket: str, key: str, versions: int = 1, delete_markers: int = 0):
        entries = self.buckets.setdefault(bucket, [])
        for i in range(versions + delete_markers):
            entries.append({"Key": key, "VersionId": f"v{len(entries):06d}", "IsDeleteMarker": i >= versions})

    def put_image(self, repository: str, digest: str, *tags: str):
        images = self.repositories.setdefault(repository, [])
        for tag in tags or (None,):
            image = {"imageDigest": digest}
            if tag:
                image["imageTag"] = tag
            images.append(image)

    def snapshot(self) -> Dict[str, Any]:
        """Everything an operator could observe on the control plane."""
        return copy.deepcopy({
            "stacks": {
                name: {k: v for k, v in record.items() if k != "pending"}
                for name, record in self.stacks.items()
            },
            "change_sets": sorted(self.change_sets),
        })

    # -- helpers -------------------------------------------------------

    def _new_stack(self, name, template, parameters):
        return {
            "StackName": name,
            "StackId": f"arn:aws:cloudformation:{REGION}:{ACCOUNT}:stack/{name}/{uuid.uuid4()}",
            "StackStatus": "CREATE_IN_PROGRESS",
            "TemplateBody": template,
            "Parameters": dict(parameters),
            "Outputs": {},
            "pending": [],
        }

    def find_stack(self, ref: str) -> Optional[Dict[str, Any]]:
        if ref in self.stacks:
            return self.stacks[ref]
        for record in self.stacks.values():
            if record["StackId"] == ref:
                return record
        return self.deleted.get(ref)

    def missing_stack(self, ref: str, operation: str) -> ClientError:
        return client_error("ValidationError", f"Stack with id {ref} does not exist", operation)

    def start(self, record: Dict[str, Any], in_progress: str, final: str):
        record["StackStatus"] = in_progress
        record["pending"] = [] if record["StackName"] in self.stuck else [final]

    def progress(self, record: Dict[str, Any]):
        """Advance an in-flight stack by one step after it has been described."""
        if not record["pending"]:
            return
        record["StackStatus"] = record["pending"].pop(0)
        if record["StackStatus"] == "DELETE_COMPLETE":
            self.stacks.pop(record["StackName"], None)
            self.deleted[record["StackId"]] = record


class FakeCloudFormation:
    def __init__(self, cloud: FakeCloud):
        self.cloud = cloud

    def describe_stacks(self, StackName):
        self.cloud.record("DescribeStacks", StackName=StackName)
        record = self.cloud.find_stack(StackName)
        if record is None:
            raise self.cloud.missing_stack(StackName, "DescribeStacks")
        description = {
            "StackName": record["StackName"],
            "StackId": record["StackId"],
            "StackStatus": record["StackStatus"],
            "Parameters": [{"ParameterKey": k, "ParameterValue": v} for k, v in record["Parameters"].items()],
            "Outputs": [{"OutputKey": k, "OutputValue": v} for k, v in record["Outputs"].items()],
        }
        if record.get("StackStatusReason"):
            description["StackStatusReason"] = record["StackStatusReason"]
        self.cloud.progress(record)
        self.cloud.after("DescribeStacks")
        return {"Stacks": [description]}

    def validate_template(self, TemplateBody):
        self.cloud.record("ValidateTemplate", TemplateBody=TemplateBody)
        if "INVALID" in TemplateBody:
            raise client_error("ValidationError", "Template format error: unsupported structure.", "ValidateTemplate")
        return {"Parameters": []}

    def create_stack(self, StackName, TemplateBody, Parameters, Capabilities, Tags, ClientRequestToken):
        self.cloud.record(
            "CreateStack", StackName=StackName, TemplateBody=TemplateBody, Parameters=Parameters,
            Capabilities=Capabilities, Tags=Tags, ClientRequestToken=ClientRequestToken,
        )
        existing = self.cloud.stacks.get(StackName)
        if existing is not None:
            if self.cloud._tokens.get(ClientRequestToken) == existing["StackId"]:
                return {"StackId": existing["StackId"]}
            raise client_error("AlreadyExistsException", f"Stack [{StackName}] already exists", "CreateStack")

        params = {p["ParameterKey"]: p["ParameterValue"] for p in Parameters}
        record = self.cloud._new_stack(StackName, TemplateBody, params)
        record["Tags"] = {t["Key"]: t["Value"] for t in Tags}
        final = self.cloud.outcomes.get((StackName, "create"), "CREATE_COMPLETE")
        self.cloud.start(record, "CREATE_IN_PROGRESS", final)
        if final == "CREATE_COMPLETE":
            record["Outputs"] = dict(self.cloud.outputs.get(StackName, {}))
        else:
            record["StackStatusReason"] = "The following resource(s) failed to create: [Resource]."
        self.cloud.stacks[StackName] = record
        self.cloud._tokens[ClientRequestToken] = record["StackId"]
        self.cloud.after("CreateStack")
        return {"StackId": record["StackId"]}

    def update_stack(self, StackName, TemplateBody, Parameters, Capabilities, Tags, ClientRequestToken):
        self.cloud.record("UpdateStack", StackName=StackName, TemplateBody=TemplateBody, Parameters=Parameters)
        record = self.cloud.find_stack(StackName)
        if record is None:
            raise self.cloud.missing_stack(StackName, "UpdateStack")
        params = {p["ParameterKey"]: p["ParameterValue"] for p in Parameters}
        if record["TemplateBody"] == TemplateBody and record["Parameters"] == params:
            raise client_error("ValidationError", "No updates are to be performed.", "UpdateStack")
        record["TemplateBody"], record["Parameters"] = TemplateBody, params
        self.cloud.start(record, "UPDATE_IN_PROGRESS", "UPDATE_COMPLETE")
        return {"StackId": record["StackId"]}

    def delete_stack(self, StackName, ClientRequestToken):
        self.cloud.record("DeleteStack", StackName=StackName, ClientRequestToken=ClientRequestToken)
        record = self.cloud.find_stack(StackName)
        if record is None or record["StackStatus"] == "DELETE_COMPLETE":
            return {}
        final = self.cloud.outcomes.get((record["StackName"], "delete"), "DELETE_COMPLETE")
        if final != "DELETE_COMPLETE":
            record["StackStatusReason"] = "The following resource(s) failed to delete: [Resource]."
        self.cloud.start(record, "DELETE_IN_PROGRESS", final)
        return {}

    def list_stack_resources(self, StackName, NextToken=None):
        self.cloud.record("ListStackResources", StackName=StackName, NextToken=NextToken)
        record = self.cloud.find_stack(StackName)
        if record is None:
            raise self.cloud.missing_stack(StackName, "ListStackResources")
        summaries = [
            {
                "LogicalResourceId": f"Resource{i}",
                "PhysicalResourceId": physical_id,
                "ResourceType": resource_type,
                "ResourceStatus": "CREATE_COMPLETE",
            }
            for i, (resource_type, physical_id) in enumerate(self.cloud.resources[record["StackName"]])
        ]
        # Two summaries per page so callers must follow NextToken.
        start = int(NextToken or 0)
        response = {"StackResourceSummaries": summaries[start:start + 2]}
        if start + 2 < len(summaries):
            response["NextToken"] = str(start + 2)
        return response

    def create_change_set(self, StackName, ChangeSetName, ChangeSetType, TemplateBody, Parameters,
                          Capabilities, Tags, ClientToken):
        self.cloud.record(
            "CreateChangeSet", StackName=StackName, ChangeSetName=ChangeSetName, ChangeSetType=ChangeSetType,
            TemplateBody=TemplateBody, Parameters=Parameters, ClientToken=ClientToken,
        )
        record = self.cloud.find_stack(StackName)
        if record is None:
            raise self.cloud.missing_stack(StackName, "CreateChangeSet")
        params = {p["ParameterKey"]: p["ParameterValue"] for p in Parameters}
        change_set_id = f"arn:aws:cloudformation:{REGION}:{ACCOUNT}:changeSet/{ChangeSetName}/{uuid.uuid4()}"
        unchanged = (
            ChangeSetType == "UPDATE" and record["TemplateBody"] == TemplateBody and record["Parameters"] == params
        )
        self.cloud.change_sets[change_set_id] = {
            "ChangeSetId": change_set_id,
            "ChangeSetName": ChangeSetName,
            "StackName": StackName,
            "StackId": record["StackId"],
            "ChangeSetType": ChangeSetType,
            "TemplateBody": TemplateBody,
            "Parameters": params,
            "Status": "CREATE_IN_PROGRESS",
            "final": "FAILED" if unchanged else "CREATE_COMPLETE",
            "StatusReason": NO_CHANGES_REASON if unchanged else None,
            "Changes": [] if unchanged else self.cloud.change_plan.get(StackName, [
                {
                    "Type": "Resource",
                    "ResourceChange": {
                        "Action": "Modify",
                        "LogicalResourceId": "Resource",
                        "ResourceType": "AWS::SSM::Parameter",
                        "Replacement": "False",
                    },
                }
            ]),
        }
        return {"Id": change_set_id, "StackId": record["StackId"]}

    def _change_set(self, ref, operation):
        change_set = self.cloud.change_sets.get(ref)
        if change_set is None:
            for candidate in self.cloud.change_sets.values():
                if candidate["ChangeSetName"] == ref:
                    return candidate
            raise client_error("ChangeSetNotFound", f"ChangeSet [{ref}] does not exist", operation)
        return change_set

    def describe_change_set(self, ChangeSetName, StackName=None, NextToken=None):
        self.cloud.record("DescribeChangeSet", ChangeSetName=ChangeSetName, NextToken=NextToken)
        change_set = self._change_set(ChangeSetName, "DescribeChangeSet")
        status = change_set["Status"]
        change_set["Status"] = change_set["final"]
        changes = change_set["Changes"]
        start = int(NextToken or 0)
        response = {
            "ChangeSetId": change_set["ChangeSetId"],
            "ChangeSetName": change_set["ChangeSetName"],
            "StackName": change_set["StackName"],
            "Status": status,
            "Changes": changes[start:start + 2],
        }
        if status == "FAILED" and change_set["StatusReason"]:
            response["StatusReason"] = change_set["StatusReason"]
        if start + 2 < len(changes):
            response["NextToken"] = str(start + 2)
        return response

    def execute_change_set(self, ChangeSetName, ClientRequestToken):
        self.cloud.record("ExecuteChangeSet", ChangeSetName=ChangeSetName, ClientRequestToken=ClientRequestToken)
        change_set = self._change_set(ChangeSetName, "ExecuteChangeSet")
        record = self.cloud.find_stack(change_set["StackName"])
        record["TemplateBody"] = change_set["TemplateBody"]
        record["Parameters"] = dict(change_set["Parameters"])
        # CREATE change sets complete a stack held in review.
        operation = "create" if change_set["ChangeSetType"] == "CREATE" else "update"
        success = f"{operation.upper()}_COMPLETE"
        final = self.cloud.outcomes.get((record["StackName"], operation), success)
        if final == success:
            record["Outputs"] = dict(self.cloud.outputs.get(record["StackName"], record["Outputs"]))
        else:
            record["StackStatusReason"] = f"The following resource(s) failed to {operation}: [Resource]."
        self.cloud.start(record, f"{operation.upper()}_IN_PROGRESS", final)
        # Executing a change set removes every change set of the stack.
        for ref in [k for k, v in self.cloud.change_sets.items() if v["StackName"] == change_set["StackName"]]:
            del self.cloud.change_sets[ref]
        return {}

    def delete_change_set(self, ChangeSetName):
        self.cloud.record("DeleteChangeSet", ChangeSetName=ChangeSetName)
        change_set = self._change_set(ChangeSetName, "DeleteChangeSet")
        del self.cloud.change_sets[change_set["ChangeSetId"]]
        return {}


class FakeS3:
    def __init__(self, cloud: FakeCloud):
        self.cloud = cloud
        # Called after every delete_objects, for simulating concurrent writers.
        self.on_delete = None

    def _bucket(self, name, operation):
        if name not in self.cloud.buckets:
            raise client_error("NoSuchBucket", "The specified bucket does not exist", operation, 404)
        return self.cloud.buckets[name]

    def list_object_versions(self, Bucket, MaxKeys=1000, KeyMarker=None, VersionIdMarker=None):
        self.cloud.record("ListObjectVersions", Bucket=Bucket, KeyMarker=KeyMarker, VersionIdMarker=VersionIdMarker)
        entries = sorted(self._bucket(Bucket, "ListObjectVersions"), key=lambda e: (e["Key"], e["VersionId"]))
        if KeyMarker is not None:
            marker = (KeyMarker, VersionIdMarker or "")
            entries = [e for e in entries if (e["Key"], e["VersionId"]) > marker]
        page, rest = entries[:MaxKeys], entries[MaxKeys:]
        response = {
            "Versions": [{"Key": e["Key"], "VersionId": e["VersionId"]} for e in page if not e["IsDeleteMarker"]],
            "DeleteMarkers": [{"Key": e["Key"], "VersionId": e["VersionId"]} for e in page if e["IsDeleteMarker"]],
            "IsTruncated": bool(rest),
        }
        if rest:
            response["NextKeyMarker"] = page[-1]["Key"]
            response["NextVersionIdMarker"] = page[-1]["VersionId"]
        return response

    def delete_objects(self, Bucket, Delete):
        self.cloud.record("DeleteObjects", Bucket=Bucket, Count=len(Delete["Objects"]))
        entries = self._bucket(Bucket, "DeleteObjects")
        if len(Delete["Objects"]) > 1000:
            raise client_error("MalformedXML", "The XML you provided was not well-formed", "DeleteObjects")
        errors = []
        for obj in Delete["Objects"]:
            if obj["Key"] in self.cloud.undeletable_keys:
                errors.append({"Key": obj["Key"], "VersionId": obj["VersionId"],
                               "Code": "AccessDenied", "Message": "Access Denied"})
                continue
            entries[:] = [e for e in entries if (e["Key"], e["VersionId"]) != (obj["Key"], obj["VersionId"])]
        if self.on_delete:
            self.on_delete(Bucket)
        return {"Errors": errors} if errors else {}


class FakeECR:
    def __init__(self, cloud: FakeCloud):
        self.cloud = cloud

    def _repository(self, name, operation):
        if name not in self.cloud.repositories:
            raise client_error(
                "RepositoryNotFoundException", f"The repository with name '{name}' does not exist", operation
            )
        return self.cloud.repositories[name]

    def list_images(self, repositoryName, maxResults=1000, nextToken=None):
        self.cloud.record("ListImages", repositoryName=repositoryName, nextToken=nextToken)
        images = self._repository(repositoryName, "ListImages")
        size = min(maxResults, self.cloud.list_page_size)
        start = int(nextToken or 0)
        response = {"imageIds": [dict(i) for i in images[start:start + size]]}
        if start + size < len(images):
            response["nextToken"] = str(start + size)
        return response

    def batch_delete_image(self, repositoryName, imageIds):
        self.cloud.record("BatchDeleteImage", repositoryName=repositoryName, count=len(imageIds))
        images = self._repository(repositoryName, "BatchDeleteImage")
        if len(imageIds) > 100:
            raise client_error("InvalidParameterException", "imageIds must contain at most 100 items",
                               "BatchDeleteImage")
        deleted, failures = [], []
        for image_id in imageIds:
            digest = image_id.get("imageDigest")
            if digest in self.cloud.undeletable_digests:
                failures.append({"imageId": image_id, "failureCode": "ImageReferencedByManifestList",
                                 "failureReason": "Requested image referenced by manifest list"})
                continue
            matches = [i for i in images if i.get("imageDigest") == digest
                       or (not digest and i.get("imageTag") == image_id.get("imageTag"))]
            if not matches:
                failures.append({"imageId": image_id, "failureCode": "ImageNotFound",
                                 "failureReason": "Requested image not found"})
                continue
            images[:] = [i for i in images if i not in matches]
            deleted.append(image_id)
        return {"imageIds": deleted, "failures": failures}


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    # CLI runs attach handlers to streams that are closed afterwards.
    logging.getLogger().handlers.clear()


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(cloud, sleeps):
    return ControlPlaneClient(
        region=REGION,
        cloudformation=cloud.cloudformation,
        s3=cloud.s3,
        ecr=cloud.ecr,
        poll_interval=0.01,
        max_poll_interval=0.05,
        sleep=sleeps.append,
    )


@pytest.fixture
def confirmer():
    return AutoConfirmer(approve=True, token="DELETE")


@pytest.fixture
def echoed():
    return []


@pytest.fixture
def preview(client, confirmer, echoed):
    return ChangePreviewEngine(client, confirmer, change_set_timeout=5, echo=echoed.append)


@pytest.fixture
def sweeper(client):
    return ResourceSweeper(client, max_workers=2)


@pytest.fixture
def lifecycle(client, preview, sweeper):
    return StackLifecycle(client, preview, sweeper, wait_timeout=5)
