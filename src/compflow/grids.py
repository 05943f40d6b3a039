"""Cartesian mesh with explicit cell/face topology."""

import logging
import typing

import attrs
import numpy as np

from compflow._precision import get_dtype
from compflow.errors import ValidationError
from compflow.types import IndexArray, OneDimensionalArray, TwoDimensionalArray

logger = logging.getLogger(__name__)

__all__ = ["CartesianMesh", "STANDARD_GRAVITY", "downward_gravity"]

STANDARD_GRAVITY = 9.80665
"""Standard acceleration due to gravity (m/s²)."""


def downward_gravity(strength: float = STANDARD_GRAVITY) -> OneDimensionalArray:
    """
    Gravity vector pointing along +z, the depth axis of `CartesianMesh`.

    :param strength: Magnitude of the gravity field (m/s²).
    :return: Gravity vector of shape (3,).
    """
    return np.array([0.0, 0.0, strength], dtype=get_dtype())


@attrs.frozen(slots=True)
class CartesianMesh:
    """
    Structured Cartesian mesh stored as an unstructured cell/face list.

    Cells are numbered with the x index varying fastest. Each face stores the
    two cells it connects; boundary faces store the interior cell first and
    -1 second. Boundary faces carry the ids 1..6 for the x-, x+, y-, y+, z-
    and z+ sides respectively. The z axis points downwards.
    """

    shape: typing.Tuple[int, int, int]
    """Number of cells along x, y and z."""
    spacing: typing.Tuple[float, float, float]
    """Cell sizes along x, y and z (m)."""
    cell_volumes: OneDimensionalArray
    cell_centroids: TwoDimensionalArray
    cell_dimensions: TwoDimensionalArray
    face_cells: IndexArray
    face_areas: OneDimensionalArray
    face_centroids: TwoDimensionalArray
    boundary_ids: IndexArray

    @classmethod
    def from_dimensions(
        cls,
        shape: typing.Tuple[int, int, int],
        spacing: typing.Tuple[float, float, float],
        origin: typing.Tuple[float, float, float] = (0.0, 0.0, 0.0),
    ) -> "CartesianMesh":
        """
        Build a Cartesian mesh.

        :param shape: Number of cells along x, y and z.
        :param spacing: Cell sizes along x, y and z (m).
        :param origin: Coordinates of the mesh corner with the lowest x, y and z (m).
        :return: `CartesianMesh` instance.
        """
        if len(shape) != 3 or any(n < 1 for n in shape):
            raise ValidationError(f"Mesh shape must hold three positive counts, got {shape}.")
        if len(spacing) != 3 or any(d <= 0.0 for d in spacing):
            raise ValidationError(
                f"Mesh spacing must hold three positive sizes, got {spacing}."
            )
        dtype = get_dtype()
        shape = typing.cast(typing.Tuple[int, int, int], tuple(int(n) for n in shape))
        spacing_array = np.asarray(spacing, dtype=dtype)
        origin_array = np.asarray(origin, dtype=dtype)

        num_cells = int(np.prod(shape))
        cell_ijk = np.array(np.unravel_index(np.arange(num_cells), shape, order="F"))
        cell_centroids = origin_array + (cell_ijk.T + 0.5) * spacing_array
        cell_volumes = np.full(num_cells, np.prod(spacing_array), dtype=dtype)
        cell_dimensions = np.tile(spacing_array, (num_cells, 1))

        face_cells = []
        face_areas = []
        face_centroids = []
        boundary_ids = []
        for axis in range(3):
            cells, areas, centroids, ids = _build_axis_faces(
                shape=shape,
                spacing=spacing_array,
                origin=origin_array,
                axis=axis,
            )
            face_cells.append(cells)
            face_areas.append(areas)
            face_centroids.append(centroids)
            boundary_ids.append(ids)

        mesh = cls(
            shape=shape,
            spacing=typing.cast(
                typing.Tuple[float, float, float], tuple(float(d) for d in spacing)
            ),
            cell_volumes=cell_volumes,
            cell_centroids=np.ascontiguousarray(cell_centroids, dtype=dtype),
            cell_dimensions=cell_dimensions,
            face_cells=np.ascontiguousarray(np.concatenate(face_cells), dtype=np.int64),
            face_areas=np.concatenate(face_areas).astype(dtype, copy=False),
            face_centroids=np.ascontiguousarray(np.concatenate(face_centroids), dtype=dtype),
            boundary_ids=np.concatenate(boundary_ids).astype(np.int64, copy=False),
        )
        logger.debug(
            f"Built Cartesian mesh {shape} with {mesh.num_cells} cells and {mesh.num_faces} faces"
        )
        return mesh

    @property
    def num_cells(self) -> int:
        return self.cell_volumes.shape[0]

    @property
    def num_faces(self) -> int:
        return self.face_cells.shape[0]

    def cell_volume(self, cell: int) -> float:
        return float(self.cell_volumes[cell])

    def cell_centroid(self, cell: int) -> OneDimensionalArray:
        return self.cell_centroids[cell]

    def boundary_id(self, face: int) -> int:
        return int(self.boundary_ids[face])

    def cell_index(self, i: int, j: int, k: int) -> int:
        """Linear index of the cell at (i, j, k)."""
        return int(np.ravel_multi_index((i, j, k), self.shape, order="F"))


def _build_axis_faces(
    shape: typing.Tuple[int, int, int],
    spacing: np.ndarray,
    origin: np.ndarray,
    axis: int,
) -> typing.Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Build the faces normal to one axis.

    :return: Tuple of (face_cells, face_areas, face_centroids, boundary_ids) for the axis.
    """
    face_shape = list(shape)
    face_shape[axis] += 1
    num_faces = int(np.prod(face_shape))
    face_ijk = np.array(np.unravel_index(np.arange(num_faces), face_shape, order="F"))
    plane = face_ijk[axis]

    lower_ijk = face_ijk.copy()
    lower_ijk[axis] -= 1
    has_lower = plane > 0
    has_upper = plane < shape[axis]

    lower = np.full(num_faces, -1, dtype=np.int64)
    upper = np.full(num_faces, -1, dtype=np.int64)
    lower[has_lower] = np.ravel_multi_index(
        tuple(lower_ijk[:, has_lower]), shape, order="F"
    )
    upper[has_upper] = np.ravel_multi_index(
        tuple(face_ijk[:, has_upper]), shape, order="F"
    )

    # Interior cell first on boundary faces
    first = np.where(has_lower, lower, upper)
    second = np.where(has_lower & has_upper, upper, -1)
    face_cells = np.stack([first, second], axis=1)

    boundary_ids = np.zeros(num_faces, dtype=np.int64)
    boundary_ids[~has_lower] = 2 * axis + 1
    boundary_ids[~has_upper] = 2 * axis + 2

    centroids = origin + (face_ijk.T + 0.5) * spacing
    centroids[:, axis] = origin[axis] + plane * spacing[axis]
    others = [a for a in range(3) if a != axis]
    areas = np.full(num_faces, spacing[others[0]] * spacing[others[1]])
    return face_cells, areas, centroids, boundary_ids
