"""Kubernetes client bootstrap shared by the cluster-backed backends."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from functools import partial
from typing import Any, TypeVar

from kubernetes import config

logger = logging.getLogger(__name__)

T = TypeVar("T")

_config_loaded = False


def load_kubernetes_config() -> None:
    """Load in-cluster config, falling back to the local kubeconfig."""
    global _config_loaded
    if _config_loaded:
        return
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")
    _config_loaded = True


async def call_api(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking kubernetes client call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))
