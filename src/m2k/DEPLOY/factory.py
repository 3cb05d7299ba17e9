"""
Wiring of collaborators from configuration.
"""
import logging
from typing import Callable, Optional
from ..BUILDERS.build_service import ImageBuildService
from ..BUILDERS.image_builder import BuildxBuilder, DockerBuilder, ImageBuilder
from ..CONFIG.settings import M2KConfig
from ..MODELS.deploy import ClusterContext, DeployStage
from ..PIPELINE.state_store import FileStateStore, KubectlStateStore, PipelineStateStore
from ..REGISTRY.base import ArtifactRegistry
from ..REGISTRY.image_index import LocalImageIndex
from ..REGISTRY.registry_client import RegistryClient, registry_host
from ..RUNNERS.command_runner import CommandRunner
from .coordinator import DeployCoordinator
from .deployer import CommandDeployer

logger = logging.getLogger(__name__)


def cluster_context(config: M2KConfig) -> ClusterContext:
    return ClusterContext(
        namespace=config.namespace,
        registry=config.registry,
        kube_context=config.kube_context,
        kubeconfig=config.kubeconfig,
    )


def make_registry(config: M2KConfig) -> ArtifactRegistry:
    # Images built for the local daemon are never pushed, so only the index knows them
    if config.registry and (config.push or config.builder == "buildx"):
        return make_registry_client(config)
    if config.registry:
        logger.warning(
            "M2K_REGISTRY is set but images are not pushed; components without an image stay local",
        )
    return LocalImageIndex(config.image_index, runner=CommandRunner(), docker=config.docker_bin)


def make_registry_client(config: M2KConfig) -> RegistryClient:
    client = RegistryClient()
    if config.registry and config.registry_username:
        password = config.registry_password.get_secret_value() if config.registry_password else ""
        client.set_credentials(registry_host(config.registry), config.registry_username, password)
    client.load_docker_config(config.docker_config)
    return client


def make_builder(config: M2KConfig) -> ImageBuilder:
    if config.builder == "buildx":
        return BuildxBuilder(docker=config.docker_bin, builder=config.buildx_builder)
    return DockerBuilder(docker=config.docker_bin, push=config.push)


def make_store(config: M2KConfig) -> PipelineStateStore:
    if config.state_backend == "file":
        return FileStateStore(config.state_dir)
    return KubectlStateStore(
        config.namespace,
        kubectl=config.kubectl_bin,
        context=config.kube_context,
        kubeconfig=config.kubeconfig,
    )


def build_coordinator(config: M2KConfig,
                      on_stage: Optional[Callable[[DeployStage], None]] = None) -> DeployCoordinator:
    """
    Selects the registry, builder, deployer and store implementations named
    by the configuration and assembles a coordinator from them.
    """
    registry = make_registry(config)
    builder = make_builder(config)
    logger.debug(
        "Using %s with %s, records in %s",
        type(builder).__name__, type(registry).__name__, config.state_backend,
    )
    return DeployCoordinator(
        context=cluster_context(config),
        registry=registry,
        build_service=ImageBuildService(registry, builder, config.max_workers),
        deployer=CommandDeployer(shell=config.shell, docker=config.docker_bin),
        store=make_store(config),
        on_stage=on_stage,
    )
