import os
import struct
from dataclasses import dataclass, field
from typing import List, Tuple, Optional, Any
import numpy as np
import pyrr

from glmlib.debug_stub import DebugConsole


# ==========================================================================
# 1. CONSTANTS and Errors
# ==========================================================================
GLM_IDENT = b"2LGM"
GLM_VERSION = 6

MAX_QPATH = 64

# Bone weights are 10 bit quantities, stored shifted into the top of a u16
MAX_BONE_WEIGHT = (1 << 10) - 1
BONE_WEIGHT_SHIFT = 16 - 10
BONE_INDEX_MASK = (1 << 5) - 1
MAX_VERTEX_WEIGHTS = 4


class GlmError(Exception):
    """Base class for everything that can go wrong while decoding a .glm file."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GlmIOError(GlmError):
    """Opening, reading or seeking the underlying stream failed."""

    kind = "io"


class GlmFormatError(GlmError):
    """The header does not describe a supported Ghoul2 model."""

    kind = "format"


class GlmStructuralError(GlmError):
    """The file is a Ghoul2 model but its internal structure is inconsistent."""

    kind = "structural"


class BinaryReader:
    def __init__(self, stream, endian="<"):
        self.stream = stream
        self.endian = endian
        self.last_error = ""

    def _fail(self, message):
        self.last_error = message
        raise GlmIOError(message)

    def read_bytes(self, num_bytes):
        try:
            data = self.stream.read(num_bytes)
        except (OSError, ValueError) as e:
            self._fail(str(e))
        if len(data) < num_bytes:
            self._fail(f"Tried to read {num_bytes} bytes, but only got {len(data)}.")
        return data

    def read_struct(self, fmt, num_bytes):
        return struct.unpack(self.endian + fmt, self.read_bytes(num_bytes))

    def read_u32(self):
        return self.read_struct("I", 4)[0]

    def read_i32(self):
        return self.read_struct("i", 4)[0]

    def read_f32(self):
        return self.read_struct("f", 4)[0]

    def check_count(self, count):
        if count < 0:
            self._fail(f"Invalid element count {count}.")
        return count

    def read_i32_array(self, count) -> List[int]:
        if self.check_count(count) == 0:
            return []
        remaining = self.size() - self.tell()
        if 4 * count > remaining:
            self._fail(f"Cannot read {count} ints, only {remaining} bytes left in stream.")
        return list(self.read_struct(f"{count}i", 4 * count))

    def read_fixed_string(self, length=MAX_QPATH) -> str:
        """Reads a Quake style char[length] field, which need not be NUL terminated."""
        raw = self.read_bytes(length)
        end = raw.find(b"\0")
        if end != -1:
            raw = raw[:end]
        return raw.decode("latin-1")

    def read_vec2(self) -> Tuple[float, ...]:
        return self.read_struct("ff", 8)

    def read_vec3(self) -> Tuple[float, ...]:
        return self.read_struct("fff", 12)

    def tell(self):
        try:
            return self.stream.tell()
        except (OSError, ValueError) as e:
            self._fail(str(e))

    def size(self):
        current_pos = self.tell()
        try:
            self.stream.seek(0, os.SEEK_END)
            end_pos = self.stream.tell()
            self.stream.seek(current_pos, os.SEEK_SET)
        except (OSError, ValueError) as e:
            self._fail(str(e))
        return end_pos

    def seek(self, offset):
        """Absolute seek. Offsets outside [0, size] fail like a real file system would."""
        if offset < 0:
            self._fail(f"Cannot seek to negative offset {offset}.")
        end_pos = self.size()
        if offset > end_pos:
            self._fail(f"Cannot seek to {offset}, stream is only {end_pos} bytes long.")
        try:
            self.stream.seek(offset, os.SEEK_SET)
        except (OSError, ValueError) as e:
            self._fail(str(e))
        return offset

    def close(self):
        self.stream.close()


def open_read(filepath) -> BinaryReader:
    try:
        f = open(filepath, "rb")
    except OSError as e:
        raise GlmIOError(f"Error opening file: {e}") from e
    return BinaryReader(f)


# ==============================================================================
# 2. GLM Data Structures
# ==============================================================================
@dataclass(frozen=True)
class GlmHeader:
    ident: bytes
    version: int
    name: str
    anim_name: str
    anim_index: int
    num_bones: int
    num_lods: int
    ofs_lods: int
    num_surfaces: int
    ofs_surf_hierarchy: int
    # Informational only, the blocks need not be stored in order
    ofs_end: int


@dataclass
class GlmSurfaceHierarchyEntry:
    name: str
    flags: int
    shader: str
    parent_index: int  # -1 for root surfaces
    child_indices: List[int] = field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return self.parent_index == -1


@dataclass
class GlmVertex:
    normal: Tuple[float, float, float]
    position: Tuple[float, float, float]
    uv: Tuple[float, float] = (0.0, 0.0)
    bone_indices: List[int] = field(default_factory=lambda: [0] * MAX_VERTEX_WEIGHTS)
    bone_weights: List[int] = field(default_factory=lambda: [0] * MAX_VERTEX_WEIGHTS)


@dataclass
class GlmTriangle:
    indices: Tuple[int, int, int]


@dataclass
class GlmSurface:
    index: int
    bone_references: List[int] = field(default_factory=list)
    triangles: List[GlmTriangle] = field(default_factory=list)
    vertices: List[GlmVertex] = field(default_factory=list)


@dataclass
class GlmLOD:
    surfaces: List[GlmSurface] = field(default_factory=list)


@dataclass
class GlmModel:
    name: str
    anim_name: str
    num_bones: int
    header: GlmHeader
    hierarchy: List[GlmSurfaceHierarchyEntry] = field(default_factory=list)
    # Indices into hierarchy, never separate copies
    root_surfaces: List[int] = field(default_factory=list)
    lods: List[GlmLOD] = field(default_factory=list)
    # Attached later by whoever uploads the model, not part of the decoded data
    render_info: Optional[Any] = field(default=None, compare=False, repr=False)

    def root_entries(self) -> List[GlmSurfaceHierarchyEntry]:
        return [self.hierarchy[i] for i in self.root_surfaces]

    def children_of(self, index: int) -> List[GlmSurfaceHierarchyEntry]:
        children = []
        for child in self.hierarchy[index].child_indices:
            if not 0 <= child < len(self.hierarchy):
                raise IndexError(
                    f"Surface {index} references child {child}, but there are only {len(self.hierarchy)} surfaces."
                )
            children.append(self.hierarchy[child])
        return children


# ==============================================================================
# 3. Vertex weight codec
# ==============================================================================
def unpack_bone_weights(
        compressed_weight_info: int, raw_bone_weights: bytes
) -> List[Tuple[int, int]]:
    """
    Unpacks the compressed bone index/weight field of a vertex.

    Bits 30-31 hold the weight count minus one, the bottom 20 bits four 5 bit
    bone indices and bits 20-27 the 2 bit overflow of the first three weights,
    whose low 8 bits live in raw_bone_weights. The last active weight is not
    stored at all: it is whatever makes the active weights sum to 1023.

    Returns four (bone_index, weight) pairs with the 10 bit weight unshifted.
    Inactive slots are (0, 0).
    """
    compressed_weight_info &= 0xFFFFFFFF
    num_weights = (compressed_weight_info >> 30) + 1

    pairs = []
    total_weight = 0
    for i in range(MAX_VERTEX_WEIGHTS):
        bone_index = (compressed_weight_info >> (5 * i)) & BONE_INDEX_MASK
        if i < num_weights - 1:
            # shift by 20 - 8 = 12, the low 8 bits come from the raw byte
            weight = raw_bone_weights[i] | (
                (compressed_weight_info >> (12 + 2 * i)) & 0x300
            )
            total_weight += weight
        elif i == num_weights - 1:
            weight = MAX_BONE_WEIGHT - total_weight
        else:
            bone_index = 0
            weight = 0
        pairs.append((bone_index, weight))
    return pairs


def decode_bone_weights(
        compressed_weight_info: int, raw_bone_weights: bytes
) -> List[Tuple[int, int]]:
    """Like unpack_bone_weights, but with weights spread over the full u16 range."""
    return [
        (bone_index, (weight << BONE_WEIGHT_SHIFT) & 0xFFFF)
        for bone_index, weight in unpack_bone_weights(
            compressed_weight_info, raw_bone_weights
        )
    ]


# ==============================================================================
# 4. GLM Parser
# ==============================================================================
class GLMParser:
    def __init__(self, filepath=None):
        self.filepath = filepath
        self.reader = None
        self.header = None

    def parse(self) -> GlmModel:
        self.reader = open_read(self.filepath)
        try:
            return self.parse_stream(self.reader)
        finally:
            self.reader.close()

    def parse_stream(self, reader: BinaryReader) -> GlmModel:
        self.reader = reader
        self.header = self._read_header()

        self._seek(self.header.ofs_surf_hierarchy, "Error seeking hierarchy offsets")
        hierarchy, root_surfaces = self._read_hierarchy()

        self._seek(self.header.ofs_lods, "Error seeking LODs")
        lods = [
            self._read_lod(self.header.num_surfaces)
            for _ in range(self.header.num_lods)
        ]

        # since the file need not be in order, there is no sanity check against ofs_end
        model = GlmModel(
            name=self.header.name,
            anim_name=self.header.anim_name,
            num_bones=self.header.num_bones,
            header=self.header,
            hierarchy=hierarchy,
            root_surfaces=root_surfaces,
            lods=lods,
        )
        _log_model_summary(model)
        return model

    def _seek(self, offset, context):
        try:
            self.reader.seek(offset)
        except GlmIOError as e:
            raise GlmIOError(f"{context}: {e.message}") from e

    def _read_header(self) -> GlmHeader:
        try:
            self.reader.seek(0)
            ident = self.reader.read_bytes(4)
            version = self.reader.read_i32()
            name = self.reader.read_fixed_string()
            anim_name = self.reader.read_fixed_string()
            (
                anim_index,
                num_bones,
                num_lods,
                ofs_lods,
                num_surfaces,
                ofs_surf_hierarchy,
                ofs_end,
            ) = self.reader.read_struct("7i", 28)
        except GlmIOError as e:
            raise GlmIOError(f"Could not read file header: {e.message}") from e

        if ident != GLM_IDENT:
            raise GlmFormatError("No valid Ghoul2 model: Invalid identifier")
        if version != GLM_VERSION:
            raise GlmFormatError("No valid Ghoul2 model: Invalid version")
        if num_bones < 0 or num_lods < 0 or num_surfaces < 0:
            raise GlmFormatError("Invalid values")

        return GlmHeader(
            ident=ident,
            version=version,
            name=name,
            anim_name=anim_name,
            anim_index=anim_index,
            num_bones=num_bones,
            num_lods=num_lods,
            ofs_lods=ofs_lods,
            num_surfaces=num_surfaces,
            ofs_surf_hierarchy=ofs_surf_hierarchy,
            ofs_end=ofs_end,
        )

    def _read_hierarchy(self) -> Tuple[List[GlmSurfaceHierarchyEntry], List[int]]:
        base_offset = self.header.ofs_surf_hierarchy
        try:
            offsets = self.reader.read_i32_array(self.header.num_surfaces)
        except GlmIOError as e:
            raise GlmIOError(f"Error reading hierarchy offsets: {e.message}") from e

        # entries are located through the offset table, so index order wins over file order
        hierarchy = []
        for offset in offsets:
            self._seek(base_offset + offset, "Error seeking hierarchy entry")
            hierarchy.append(self._read_hierarchy_entry())

        root_surfaces = [i for i, entry in enumerate(hierarchy) if entry.is_root]
        if not root_surfaces:
            raise GlmStructuralError("Broken hierarchy: no root surface")
        return hierarchy, root_surfaces

    def _read_hierarchy_entry(self) -> GlmSurfaceHierarchyEntry:
        try:
            name = self.reader.read_fixed_string()
            flags = self.reader.read_u32()
            shader = self.reader.read_fixed_string()
            self.reader.read_i32()  # shader index, resolved at load time by the engine
            parent_index = self.reader.read_i32()
            num_children = self.reader.read_i32()
            child_indices = self.reader.read_i32_array(num_children)
        except GlmIOError as e:
            raise GlmIOError(f"Could not read surface hierarchy: {e.message}") from e
        return GlmSurfaceHierarchyEntry(
            name=name,
            flags=flags,
            shader=shader,
            parent_index=parent_index,
            child_indices=child_indices,
        )

    def _read_surface(self) -> GlmSurface:
        base_offset = self.reader.tell()
        try:
            self.reader.read_i32()  # ident, unused
            (
                index,
                ofs_header,
                num_verts,
                ofs_verts,
                num_triangles,
                ofs_triangles,
                num_bone_references,
                ofs_bone_references,
            ) = self.reader.read_struct("8i", 32)
        except GlmIOError as e:
            raise GlmIOError(f"Could not read surface: {e.message}") from e

        # ofs_header points back to the start of the file
        if ofs_header != -base_offset:
            raise GlmStructuralError(
                f"Surface file position mismatch: surface at {base_offset} claims header offset {ofs_header}"
            )

        surface = GlmSurface(index=index)

        self._seek(base_offset + ofs_bone_references, "Error seeking surface bone references")
        try:
            surface.bone_references = self.reader.read_i32_array(num_bone_references)
        except GlmIOError as e:
            raise GlmIOError(f"Error reading bone references: {e.message}") from e

        self._seek(base_offset + ofs_verts, "Error seeking surface vertices")
        surface.vertices = self._read_vertices(num_verts)

        self._seek(base_offset + ofs_triangles, "Error seeking surface triangles")
        try:
            surface.triangles = [
                GlmTriangle(self.reader.read_struct("3i", 12))
                for _ in range(self.reader.check_count(num_triangles))
            ]
        except GlmIOError as e:
            raise GlmIOError(f"Could not read triangle: {e.message}") from e

        return surface

    def _read_vertices(self, num_verts) -> List[GlmVertex]:
        try:
            vertices = []
            for _ in range(self.reader.check_count(num_verts)):
                normal = self.reader.read_vec3()
                position = self.reader.read_vec3()
                compressed_weight_info = self.reader.read_u32()
                raw_bone_weights = self.reader.read_bytes(4)
                pairs = decode_bone_weights(compressed_weight_info, raw_bone_weights)
                vertices.append(
                    GlmVertex(
                        normal=normal,
                        position=position,
                        bone_indices=[bone_index for bone_index, _ in pairs],
                        bone_weights=[weight for _, weight in pairs],
                    )
                )
            # UV coordinates come after the other vertex information, in the same order
            for vertex in vertices:
                vertex.uv = self.reader.read_vec2()
        except GlmIOError as e:
            raise GlmIOError(f"Could not read vertex: {e.message}") from e
        return vertices

    def _read_lod(self, num_surfaces) -> GlmLOD:
        base_offset = self.reader.tell()
        try:
            ofs_end = self.reader.read_i32()
        except GlmIOError as e:
            raise GlmIOError(f"Could not read LODs: {e.message}") from e

        lod = GlmLOD(surfaces=[self._read_surface() for _ in range(num_surfaces)])

        # the surfaces may leave the stream anywhere, ofs_end is authoritative
        self._seek(base_offset + ofs_end, "Could not seek next LOD")
        return lod


def decode(stream) -> GlmModel:
    """
    Decodes one Ghoul2 model from a seekable binary stream or BinaryReader.

    Raises a GlmError subclass on failure, no partial model is ever returned.
    """
    reader = stream if isinstance(stream, BinaryReader) else BinaryReader(stream)
    return GLMParser().parse_stream(reader)


def load_glm(filepath) -> GlmModel:
    return GLMParser(filepath).parse()


def _log_model_summary(model: GlmModel):
    DebugConsole.log(f"\n--- GLM Summary for: {model.name} ---")
    DebugConsole.log(
        f"[Header] Animation: '{model.anim_name}', Bones: {model.num_bones}, "
        f"LODs: {model.header.num_lods}, Surfaces: {model.header.num_surfaces}"
    )
    DebugConsole.log(
        f"[Hierarchy] {len(model.hierarchy)} surfaces, roots: "
        f"{[model.hierarchy[i].name for i in model.root_surfaces]}"
    )
    for lod_index, lod in enumerate(model.lods):
        num_verts = sum(len(s.vertices) for s in lod.surfaces)
        num_tris = sum(len(s.triangles) for s in lod.surfaces)
        DebugConsole.log(
            f"  - LOD {lod_index}: {len(lod.surfaces)} surfaces, {num_verts} vertices, {num_tris} triangles"
        )
    DebugConsole.log("--- End of GLM Summary ---\n")


# ==============================================================================
# 5. EXTRACTION LOGIC
# ==============================================================================
# Interleaved layout of one vertex as uploaded to the GPU (44 bytes)
VERTEX_DTYPE = np.dtype(
    [
        ("normal", np.float32, (3,)),
        ("position", np.float32, (3,)),
        ("uv", np.float32, (2,)),
        ("bone_indices", np.uint8, (4,)),
        ("bone_weights", np.uint16, (4,)),
    ]
)


@dataclass
class SkinningData:
    """Holds bone IDs and weights for each vertex."""

    bone_ids: np.ndarray  # Shape: (num_verts, 4), dtype: int32, model bone indices
    bone_weights: np.ndarray  # Shape: (num_verts, 4), dtype: float32, 0.0-1.0


@dataclass
class RenderableSurface:
    """One surface of one LOD, flattened into arrays ready for upload."""

    name: str
    shader: str
    vertex_buffer: np.ndarray
    indices: np.ndarray
    skinning_data: SkinningData

    @property
    def positions(self) -> np.ndarray:
        return self.vertex_buffer["position"]

    @property
    def normals(self) -> np.ndarray:
        return self.vertex_buffer["normal"]

    @property
    def uvs(self) -> np.ndarray:
        return self.vertex_buffer["uv"]


def build_vertex_buffer(surface: GlmSurface) -> np.ndarray:
    num_verts = len(surface.vertices)
    buffer = np.zeros(num_verts, dtype=VERTEX_DTYPE)
    if num_verts == 0:
        return buffer
    buffer["normal"] = [v.normal for v in surface.vertices]
    buffer["position"] = [v.position for v in surface.vertices]
    buffer["uv"] = [v.uv for v in surface.vertices]
    buffer["bone_indices"] = [v.bone_indices for v in surface.vertices]
    buffer["bone_weights"] = [v.bone_weights for v in surface.vertices]
    return buffer


def build_index_buffer(surface: GlmSurface) -> np.ndarray:
    indices = np.array(
        [t.indices for t in surface.triangles], dtype=np.int64
    ).reshape(-1)
    if indices.size and (indices.min() < 0 or indices.max() >= len(surface.vertices)):
        raise ValueError(
            f"Surface {surface.index} has triangle indices outside of its {len(surface.vertices)} vertices."
        )
    return indices.astype(np.uint32)


def build_skinning_data(surface: GlmSurface, vertex_buffer: np.ndarray) -> SkinningData:
    # Vertex bone indices point into the surface's bone references, not the skeleton
    bone_references = np.array(surface.bone_references + [0], dtype=np.int32)
    local_ids = vertex_buffer["bone_indices"].astype(np.int32)
    invalid = local_ids >= len(surface.bone_references)
    local_ids[invalid] = len(surface.bone_references)
    bone_ids = bone_references[local_ids].reshape(-1, MAX_VERTEX_WEIGHTS)
    bone_weights = vertex_buffer["bone_weights"].astype(np.float32) / 65535.0
    # a slot naming a missing bone reference must not pull the vertex towards bone 0
    num_invalid = int(np.count_nonzero(invalid & (bone_weights > 0)))
    if num_invalid:
        DebugConsole.log(
            f"Warning: Surface {surface.index} has {num_invalid} weights on bone references past its {len(surface.bone_references)}. Zeroing them."
        )
    bone_weights[invalid] = 0.0
    return SkinningData(bone_ids=bone_ids, bone_weights=bone_weights)


def extract_renderable_data(
        model: GlmModel, lod_index: int = 0
) -> (List[RenderableSurface], Optional[np.ndarray]):
    """
    Flattens one LOD of a decoded model into per-surface arrays.

    Returns:
        Tuple[List[RenderableSurface], Optional[np.ndarray]]:
        - One renderable surface per surface of the LOD, in LOD order.
        - The pyrr axis aligned bounding box ([min, max]) over all positions,
          or None when the LOD has no vertices.
    """
    if not 0 <= lod_index < len(model.lods):
        raise IndexError(f"Model '{model.name}' has no LOD {lod_index} ({len(model.lods)} LODs).")

    renderable_surfaces = []
    for surface_index, surface in enumerate(model.lods[lod_index].surfaces):
        # surfaces of a LOD line up with the hierarchy by position
        entry = model.hierarchy[surface_index] if surface_index < len(model.hierarchy) else None
        vertex_buffer = build_vertex_buffer(surface)
        renderable_surfaces.append(
            RenderableSurface(
                name=entry.name if entry else f"Surface_{surface_index}",
                shader=entry.shader if entry else "",
                vertex_buffer=vertex_buffer,
                indices=build_index_buffer(surface),
                skinning_data=build_skinning_data(surface, vertex_buffer),
            )
        )

    bbox = None
    positions = [r.positions for r in renderable_surfaces if len(r.positions)]
    if positions:
        bbox = pyrr.aabb.create_from_points(np.concatenate(positions))
        DebugConsole.log(f"[Mesh] LOD {lod_index} BBox Min: {[f'{v:.2f}' for v in bbox[0]]}")
        DebugConsole.log(f"[Mesh] LOD {lod_index} BBox Max: {[f'{v:.2f}' for v in bbox[1]]}")
    return renderable_surfaces, bbox
