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
Sweeping of stateful child resources so their stack can be deleted.

Buckets are emptied of every object version and delete marker, image
repositories of every image. Independent resources are purged concurrently
and joined before the caller may delete the stack.
"""
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List

import structlog

from ..CLIENTS.control_plane import MAX_DELETE_IMAGES, MAX_DELETE_OBJECTS, ControlPlaneClient
from ..exceptions import SweepIncomplete
from ..MODELS.sweep import SweepKind, SweepResult, SweepTarget, SweepTask

logger = structlog.get_logger(__name__)


class ResourceSweeper:
    """
    Empties the buckets and image repositories owned by a stack.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        page_size: int = MAX_DELETE_OBJECTS,
        max_workers: int = 4,
        max_rounds: int = 10,
    ):
        """
        Initializes the sweeper.

        Args:
            client: Control plane adapter.
            page_size: Object versions listed and deleted per call (at most 1000).
            max_workers: Resources purged in parallel.
            max_rounds: Full passes over a resource before it is reported as not emptying.
        """
        self.client = client
        self.page_size = min(page_size, MAX_DELETE_OBJECTS)
        self.max_workers = max_workers
        self.max_rounds = max_rounds

    def plan(self, stack_name: str, kinds: List[SweepKind]) -> SweepTask:
        """Enumerates the stack's child resources of the declared kinds."""
        targets = []
        for kind in kinds:
            for resource_id in self.client.list_child_resources(stack_name, kind):
                targets.append(SweepTarget(kind=kind, resource_id=resource_id))
        return SweepTask(stack_name=stack_name, targets=targets)

    def sweep(self, stack_name: str, kinds: List[SweepKind]) -> SweepTask:
        """
        Purges every declared child resource of a stack.

        Args:
            stack_name: Qualified stack name.
            kinds: Resource kinds this stack is declared to own.

        Returns:
            The completed sweep task.

        Raises:
            SweepIncomplete: If any resource could not be emptied.
        """
        task = self.plan(stack_name, kinds)
        if not task.targets:
            return task

        logger.info("Sweeping stack resources", stack=stack_name, targets=[str(t) for t in task.targets])
        results: Dict[str, SweepResult] = {}
        workers = max(1, min(self.max_workers, len(task.targets)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self.purge, target): target for target in task.targets}
            for future in as_completed(futures):
                target = futures[future]
                try:
                    results[str(target)] = future.result()
                except Exception as e:
                    logger.error("Sweep of resource raised", stack=stack_name, target=str(target), error=str(e))
                    results[str(target)] = SweepResult(target=target, error=str(e))

        task.results = [results[str(t)] for t in task.targets]
        if not task.complete:
            raise SweepIncomplete(stack_name, [(str(r.target), r.error) for r in task.failures])
        logger.info("Sweep complete", stack=stack_name, removed=sum(r.removed for r in task.results))
        return task

    def purge(self, target: SweepTarget) -> SweepResult:
        if target.kind is SweepKind.OBJECT_STORE:
            return self.purge_object_store(target)
        if target.kind is SweepKind.IMAGE_REPOSITORY:
            return self.purge_image_repository(target)
        raise ValueError(f"Unsupported sweep kind: {target.kind}")

    def purge_object_store(self, target: SweepTarget) -> SweepResult:
        """
        Deletes every version and delete marker in a bucket, page by page, until a
        full listing comes back empty.
        """
        bucket = target.resource_id
        removed = 0
        for _ in range(self.max_rounds):
            deleted = 0
            key_marker = version_marker = None
            while True:
                page = self.client.list_object_versions(bucket, self.page_size, key_marker, version_marker)
                if page is None:
                    logger.info("Bucket does not exist", bucket=bucket)
                    return SweepResult(target=target, removed=removed, absent=removed == 0)
                if page.entries:
                    errors = self.client.delete_object_versions(bucket, page.entries)
                    if errors:
                        key, reason = errors[0]
                        return SweepResult(
                            target=target,
                            removed=removed + deleted,
                            error=f"{len(errors)} object version(s) not deleted, first {key}: {reason}",
                        )
                    deleted += len(page.entries)
                    logger.debug("Deleted object versions", bucket=bucket, count=len(page.entries))
                if not page.truncated:
                    break
                key_marker, version_marker = page.next_key_marker, page.next_version_marker
            removed += deleted
            if deleted == 0:
                logger.info("Bucket empty", bucket=bucket, removed=removed)
                return SweepResult(target=target, removed=removed)
        return SweepResult(
            target=target, removed=removed, error=f"still not empty after {self.max_rounds} passes"
        )

    def purge_image_repository(self, target: SweepTarget) -> SweepResult:
        """
        Deletes every image in a repository, in batches, until a listing comes back empty.
        """
        repository = target.resource_id
        removed = 0
        for _ in range(self.max_rounds):
            image_ids = self.client.list_image_ids(repository)
            if image_ids is None:
                logger.info("Repository does not exist", repository=repository)
                return SweepResult(target=target, removed=removed, absent=removed == 0)

            # A digest listed once per tag is deleted once.
            unique: List[Dict[str, str]] = []
            seen = set()
            for image in image_ids:
                digest = image.get("imageDigest")
                ident = {"imageDigest": digest} if digest else {"imageTag": image.get("imageTag", "")}
                key = digest or ident["imageTag"]
                if key not in seen:
                    seen.add(key)
                    unique.append(ident)

            if not unique:
                logger.info("Repository empty", repository=repository, removed=removed)
                return SweepResult(target=target, removed=removed)

            for start in range(0, len(unique), MAX_DELETE_IMAGES):
                batch = unique[start:start + MAX_DELETE_IMAGES]
                failures = self.client.batch_delete_images(repository, batch)
                if failures:
                    image, reason = failures[0]
                    return SweepResult(
                        target=target,
                        removed=removed,
                        error=f"{len(failures)} image(s) not deleted, first {image}: {reason}",
                    )
                removed += len(batch)
            logger.debug("Deleted images", repository=repository, count=len(unique))
        return SweepResult(
            target=target, removed=removed, error=f"still not empty after {self.max_rounds} passes"
        )
