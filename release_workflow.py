# release_workflow.py
# Version bump on trunk: runs only for pushes to main in the canonical repo.
from __future__ import annotations
from meshci.dsl import wf
from meshci.release import release_job
from meshci.settings import Settings

def workflow():
    return wf(release_job(Settings.from_env()))
