from logging import getLogger
from typing import Iterable

from docker.errors import ImageNotFound

from .errors import ENGINE_ERRORS
from .utils import short_id

LOG = getLogger(__name__)


def cleanup_images(engine, image_ids: Iterable[str]) -> list[str]:
    pending = sorted({image_id for image_id in image_ids if image_id})
    if not pending:
        return []
    try:
        referenced = engine.referenced_image_ids()
    except ENGINE_ERRORS as error:
        LOG.warning("Skipping image cleanup; could not list containers: %s", error)
        return []

    removed: list[str] = []
    for image_id in pending:
        if image_id in referenced:
            LOG.debug("Keeping image %s; still referenced by a container", short_id(image_id))
            continue
        try:
            engine.remove_image(image_id)
        except ImageNotFound:
            LOG.debug("Image %s already removed", short_id(image_id))
            continue
        except ENGINE_ERRORS as error:
            LOG.warning("Could not remove old image %s: %s", short_id(image_id), error)
            continue
        LOG.info("Removed stale image %s", short_id(image_id), extra={"image": image_id})
        removed.append(image_id)
    return removed
