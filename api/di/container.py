"""Centralized dependency injection container."""
from dependency_injector import containers, providers

from core.settings import get_settings
from api.features.prompt.service import ConversationSession
from infra.resources import OpenAIResource


class InfrastructureContainer(containers.DeclarativeContainer):
    """Infrastructure layer dependencies."""

    settings = providers.Singleton(get_settings)

    # Upstream completion service
    completion_source = providers.Singleton(
        OpenAIResource,
        api_key=settings.provided.CHATGPT.GPT_API_KEY.get_secret_value.call(),
        base_url=settings.provided.CHATGPT.base_url,
        timeout=settings.provided.CHATGPT.GPT_API_TIMEOUT_SECOND,
    )


class ServiceContainer(containers.DeclarativeContainer):
    """Application services - depends on infrastructure."""

    infrastructure = providers.DependenciesContainer()

    # One conversation for the whole process
    conversation_session = providers.Singleton(
        ConversationSession.from_settings,
        settings=infrastructure.settings.provided.CHATGPT,
        source=infrastructure.completion_source,
    )


class ControllerContainer(containers.DeclarativeContainer):
    """Controller-specific dependencies."""

    services = providers.DependenciesContainer()

    prompt_controller = providers.Factory(
        "api.features.prompt.controller.PromptController",
        session=services.conversation_session,
    )


class ApplicationContainer(containers.DeclarativeContainer):
    """Main application container composing all sub-containers."""

    wiring_config = containers.WiringConfiguration(
        modules=[
            "api.features.prompt.router",
        ]
    )

    infrastructure = providers.Container(InfrastructureContainer)
    services = providers.Container(ServiceContainer, infrastructure=infrastructure)
    controllers = providers.Container(ControllerContainer, services=services)
