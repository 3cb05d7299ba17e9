"""
Rendering deploy and destroy steps with the images a run resolved.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from ..errors import ManifestError
from ..MODELS.deploy import ClusterContext
from ..MODELS.manifest import DeployCommand, Manifest
from ..REGISTRY.image_reference import ImageReference
from ..UTILS.string_interpolation import EnvironmentInterpolator, env_var_name


@dataclass
class RenderedManifest:
    """
    Commands ready to run, with the environment they run in.
    """
    pipeline: str
    namespace: str
    commands: List[DeployCommand]
    environment: Dict[str, str] = field(default_factory=dict)
    workdir: Optional[str] = None
    # Image the commands run inside; None runs them on the host
    image: Optional[str] = None
    kube_context: Optional[str] = None
    kubeconfig: Optional[str] = None


def image_variables(component: str, reference: ImageReference) -> Dict[str, str]:
    """
    Environment variables describing one built image.

    'api' built as registry.local/team/api:m2k@sha256:abc gives
    M2K_BUILD_API_IMAGE=registry.local/team/api@sha256:abc,
    M2K_BUILD_API_REGISTRY=registry.local, M2K_BUILD_API_REPOSITORY=team/api,
    M2K_BUILD_API_TAG=m2k and M2K_BUILD_API_SHA=sha256:abc.
    """
    prefix = f"M2K_BUILD_{env_var_name(component)}"
    return {
        f"{prefix}_IMAGE": reference.full_name,
        f"{prefix}_REGISTRY": "" if reference.is_local else reference.registry,
        f"{prefix}_REPOSITORY": reference.repository,
        f"{prefix}_TAG": reference.tag or "",
        f"{prefix}_SHA": reference.digest or "",
    }


def _environment(images: Dict[str, ImageReference],
                 context: ClusterContext,
                 variables: Optional[Dict[str, str]]) -> Dict[str, str]:
    environment = dict(variables or {})
    environment["M2K_NAMESPACE"] = context.namespace
    environment["M2K_REGISTRY"] = context.registry or ""
    environment["M2K_KUBE_CONTEXT"] = context.kube_context or ""
    for component, reference in images.items():
        environment.update(image_variables(component, reference))
    return environment


def _interpolate(commands: List[DeployCommand], environment: Dict[str, str]) -> List[DeployCommand]:
    rendered = []
    for command in commands:
        try:
            text = EnvironmentInterpolator.interpolate(command.command, environment, strict=False)
        except KeyError as e:
            raise ManifestError(f"command '{command.name}': {e.args[0]}")
        rendered.append(DeployCommand(name=command.name, command=text))
    return rendered


def render_deploy(manifest: Manifest,
                  pipeline: str,
                  images: Dict[str, ImageReference],
                  context: ClusterContext,
                  variables: Optional[Dict[str, str]] = None,
                  workdir: Optional[str] = None) -> RenderedManifest:
    """
    Renders the deploy commands of a manifest.

    User variables come first so the generated M2K_* values always win.
    Placeholders that name no known variable are kept for the shell.
    """
    environment = _environment(images, context, variables)
    return RenderedManifest(
        pipeline=pipeline,
        namespace=context.namespace,
        commands=_interpolate(manifest.deploy.commands, environment),
        environment=environment,
        workdir=workdir,
        image=manifest.deploy.image,
        kube_context=context.kube_context,
        kubeconfig=context.kubeconfig,
    )


def render_destroy(manifest: Optional[Manifest],
                   pipeline: str,
                   images: Dict[str, ImageReference],
                   context: ClusterContext,
                   workdir: Optional[str] = None) -> RenderedManifest:
    """
    Renders the destroy commands. Without a manifest there is nothing to run
    and only the pipeline record is removed.
    """
    environment = _environment(images, context, None)
    commands = manifest.destroy if manifest is not None else []
    return RenderedManifest(
        pipeline=pipeline,
        namespace=context.namespace,
        commands=_interpolate(commands, environment),
        environment=environment,
        workdir=workdir,
        image=manifest.deploy.image if manifest is not None else None,
        kube_context=context.kube_context,
        kubeconfig=context.kubeconfig,
    )
