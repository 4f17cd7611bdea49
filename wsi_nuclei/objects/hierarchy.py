"""
Live object store for one image.

Holds the annotations and detections of an image, their parent/child links
and the current selection. Detection code adds objects here and the
post-detection filter deletes from it.
"""

from typing import Dict, Iterable, List, Optional, Sequence

from wsi_nuclei.objects.path_objects import (
    AnnotationObject,
    DetectedObject,
    PathObject,
    full_image_polygon,
)
from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)


class ObjectHierarchy:
    """
    Annotations, detections and selection state of an image.

    Objects are kept in insertion order. Getters return snapshot lists, so
    callers can iterate while removing.

    Example:
        hierarchy = ObjectHierarchy()
        roi = hierarchy.create_full_image_annotation(2048, 2048)
        hierarchy.add_objects(nuclei, parent=roi)
        small = [d for d in hierarchy.get_detection_objects()
                 if d.measurement('Nucleus: Area µm^2') <= 20]
        hierarchy.remove_objects(small, keep_children=True)
    """

    def __init__(self):
        self._annotations: List[AnnotationObject] = []
        self._detections: List[DetectedObject] = []
        self._selected: List[PathObject] = []
        # id(obj) -> obj for every stored object
        self._members: Dict[int, PathObject] = {}

    def __len__(self) -> int:
        return len(self._annotations) + len(self._detections)

    def __contains__(self, obj: PathObject) -> bool:
        return self._members.get(id(obj)) is obj

    # ------------------------------------------------------------------
    # Adding
    # ------------------------------------------------------------------

    def add_object(self, obj: PathObject, parent: Optional[PathObject] = None) -> None:
        """Add an object, optionally as a child of *parent*."""
        if parent is not None:
            obj.parent = parent
            parent.children.append(obj)
        if isinstance(obj, DetectedObject):
            self._detections.append(obj)
        elif isinstance(obj, AnnotationObject):
            self._annotations.append(obj)
        else:
            raise TypeError(f"Unsupported object type: {type(obj).__name__}")
        self._members[id(obj)] = obj

    def add_objects(self, objects: Iterable[PathObject], parent: Optional[PathObject] = None) -> None:
        for obj in objects:
            self.add_object(obj, parent=parent)

    def create_full_image_annotation(
        self,
        width: int,
        height: int,
        select: bool = True,
        name: Optional[str] = None,
    ) -> AnnotationObject:
        """Add an annotation covering the whole image and optionally select it."""
        annotation = AnnotationObject(roi=full_image_polygon(width, height), name=name)
        self.add_object(annotation)
        if select:
            self.set_selected([annotation])
        return annotation

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_annotation_objects(self) -> List[AnnotationObject]:
        return list(self._annotations)

    def get_detection_objects(self) -> List[DetectedObject]:
        """Snapshot of the current detections."""
        return list(self._detections)

    def get_child_detections(self, parent: PathObject) -> List[DetectedObject]:
        return [c for c in parent.children if isinstance(c, DetectedObject)]

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove_objects(self, objects: Sequence[PathObject], keep_children: bool = True) -> int:
        """
        Delete objects from the hierarchy.

        Args:
            objects: Objects to delete. Objects not in the hierarchy are ignored.
            keep_children: If True, children of deleted objects are re-attached
                to the deleted object's parent. If False they are deleted too.

        Returns:
            Number of objects deleted
        """
        if not objects:
            return 0

        to_remove = {id(o) for o in objects if o in self}
        if not keep_children:
            pending = [o for o in objects if id(o) in to_remove]
            while pending:
                obj = pending.pop()
                for child in obj.children:
                    if id(child) not in to_remove:
                        to_remove.add(id(child))
                        pending.append(child)

        if not to_remove:
            return 0

        removed = [o for o in self._annotations + self._detections if id(o) in to_remove]

        # Nearest surviving ancestor, resolved before any links change
        survivors = {}
        for obj in removed:
            ancestor = obj.parent
            while ancestor is not None and id(ancestor) in to_remove:
                ancestor = ancestor.parent
            survivors[id(obj)] = ancestor

        # Each affected parent's child list is rebuilt once
        parents = {id(o.parent): o.parent for o in removed
                   if o.parent is not None and id(o.parent) not in to_remove}
        for parent in parents.values():
            parent.children = [c for c in parent.children if id(c) not in to_remove]

        for obj in removed:
            if keep_children:
                new_parent = survivors[id(obj)]
                for child in obj.children:
                    if id(child) in to_remove:
                        continue
                    child.parent = new_parent
                    if new_parent is not None:
                        new_parent.children.append(child)
            obj.children = []
            obj.parent = None
            self._members.pop(id(obj), None)

        self._annotations = [o for o in self._annotations if id(o) not in to_remove]
        self._detections = [o for o in self._detections if id(o) not in to_remove]
        self._selected = [o for o in self._selected if id(o) not in to_remove]

        logger.debug(f"Removed {len(removed)} objects from hierarchy")
        return len(removed)

    def clear_detections(self) -> int:
        """Delete every detection. Returns the number deleted."""
        return self.remove_objects(self.get_detection_objects(), keep_children=True)

    def replace_detections(self, parent: PathObject, detections: Iterable[DetectedObject]) -> None:
        """Replace the detections directly under *parent* with *detections*."""
        self.remove_objects(self.get_child_detections(parent), keep_children=False)
        self.add_objects(detections, parent=parent)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def set_selected(self, objects: Iterable[PathObject]) -> None:
        selected = []
        for obj in objects:
            if obj not in self:
                raise ValueError(f"Cannot select object {obj.id}: not in hierarchy")
            selected.append(obj)
        self._selected = selected

    def select_annotations(self) -> None:
        self._selected = list(self._annotations)

    def clear_selection(self) -> None:
        self._selected = []

    def get_selected_objects(self) -> List[PathObject]:
        return list(self._selected)
