"""
Published Artifact Model
========================
An image in the registry, addressed by two tags:
    latest      - mutable alias, repointed by every successful release build
    <commit>    - immutable, never overwritten once pushed

pushed_tags records what actually reached the registry, so a partial
publication (one tag pushed, its sibling failed) stays visible for manual
remediation. Nothing is rolled back.
"""
from typing import Dict, List

from pydantic import BaseModel

from valencloud.core.constants import LATEST_TAG


class PublishedArtifact(BaseModel):
    repository: str
    commit_sha: str
    image_id: str = ""
    pushed_tags: List[str] = []
    digests: Dict[str, str] = {}

    @property
    def tags(self) -> List[str]:
        """Tags a complete publication must carry, in push order."""
        return [self.commit_sha, LATEST_TAG]

    @property
    def complete(self) -> bool:
        return all(tag in self.pushed_tags for tag in self.tags)

    @property
    def consistent(self) -> bool:
        """Both tags pushed and resolving to the same digest."""
        if not self.complete:
            return False
        digests = {self.digests.get(tag) for tag in self.tags}
        return len(digests) == 1 and None not in digests

    def reference(self, tag: str) -> str:
        return f"{self.repository}:{tag}"
