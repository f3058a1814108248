from typing import Annotated

from fastapi import Depends, Request

from chapter_tutor.infrastructure.container import TutorContainer


def get_container(request: Request) -> TutorContainer:
    """
    Pulls the container created in the app lifespan from the app state.
    """
    return request.app.state.container


def get_orchestrator(container: Annotated[TutorContainer, Depends(get_container)]):
    return container.orchestrator


def get_curriculum_cache(container: Annotated[TutorContainer, Depends(get_container)]):
    return container.curriculum_cache


def get_speech_cache(container: Annotated[TutorContainer, Depends(get_container)]):
    return container.speech_cache


def get_synthesis_service(container: Annotated[TutorContainer, Depends(get_container)]):
    return container.synthesis_service
