"""
Pinning deploy steps to the configured cluster context and namespace.

Steps run with KUBECONFIG listing a small overlay file in front of the
user's own kubeconfig files. kubectl merges them with the first file
winning, so the overlay's current context, which names the target
namespace, applies. Credentials stay in the user's files.
"""
import logging
import os
import tempfile
from contextlib import contextmanager
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

import yaml

from ..errors import ApplyError

logger = logging.getLogger(__name__)


def kubeconfig_files(kubeconfig: Optional[str], environ: Mapping[str, str]) -> List[str]:
    """
    The files kubectl would read: an explicit kubeconfig, else $KUBECONFIG,
    else ~/.kube/config.
    """
    if kubeconfig:
        return [kubeconfig]
    listed = [p for p in environ.get("KUBECONFIG", "").split(os.pathsep) if p]
    return listed or [os.path.join(os.path.expanduser("~"), ".kube", "config")]


def _load(path: str) -> Dict:
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as e:
        raise ApplyError(f"cannot read kubeconfig {path}: {e}")
    return data if isinstance(data, dict) else {}


def find_context(files: List[str], name: Optional[str]) -> Tuple[Optional[str], Optional[Dict]]:
    """
    Looks up context `name`, or the current context when no name is given,
    across `files` with kubectl's first-definition-wins merge.
    """
    contexts: Dict[str, Dict] = {}
    for path in files:
        data = _load(path)
        if name is None and data.get("current-context"):
            name = data["current-context"]
        for entry in data.get("contexts") or []:
            if isinstance(entry, dict) and entry.get("name") and entry["name"] not in contexts:
                contexts[entry["name"]] = entry.get("context") or {}
    if name is None:
        return None, None
    return name, contexts.get(name)


def overlay_document(pipeline: str, namespace: str, context: Dict) -> Dict:
    scoped = f"m2k-{pipeline}"
    entry = {key: context[key] for key in ("cluster", "user") if context.get(key)}
    entry["namespace"] = namespace
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "current-context": scoped,
        "contexts": [{"name": scoped, "context": entry}],
    }


@contextmanager
def scoped_kubeconfig(pipeline: str,
                      namespace: str,
                      kube_context: Optional[str] = None,
                      kubeconfig: Optional[str] = None,
                      environ: Optional[Mapping[str, str]] = None) -> Iterator[Optional[List[str]]]:
    """
    Yields the KUBECONFIG file list for a pipeline's steps, or None when
    there is no kubeconfig to scope and nothing was configured explicitly.

    :raises ApplyError: If a configured context or kubeconfig cannot be used.
    """
    files = kubeconfig_files(kubeconfig, os.environ if environ is None else environ)
    name, context = find_context(files, kube_context)
    if context is None:
        if kube_context or kubeconfig:
            raise ApplyError(f"kube context '{name or kube_context}' not found in {os.pathsep.join(files)}")
        logger.warning("No current kube context found; steps of '%s' use kubectl defaults", pipeline)
        yield None
        return

    fd, overlay = tempfile.mkstemp(prefix="m2k-kube-", suffix=".yaml")
    try:
        with os.fdopen(fd, 'w') as f:
            yaml.safe_dump(overlay_document(pipeline, namespace, context), f, default_flow_style=False)
        logger.debug("Steps of '%s' use context '%s', namespace '%s'", pipeline, name, namespace)
        yield [overlay] + [path for path in files if os.path.exists(path)]
    finally:
        os.unlink(overlay)
