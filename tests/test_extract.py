import unittest
from io import BytesIO

import numpy as np

from glm_builder import build_glm, minimal_glm, make_entry, make_surface, make_vertex
from glmlib.glm_parser import (
    decode, extract_renderable_data, build_vertex_buffer, build_index_buffer,
    VERTEX_DTYPE, GlmSurface, GlmTriangle, GlmVertex
)


def skinned_model():
    vertices = [
        make_vertex(position=(-1.0, 0.0, 2.0), uv=(0.0, 1.0),
                    info=(1 << 30) | (1 << 5) | 0, raw=bytes([255, 0, 0, 0])),
        make_vertex(position=(3.0, -2.0, 0.0), uv=(1.0, 0.0), info=2),
        make_vertex(position=(0.0, 5.0, 1.0), uv=(0.5, 0.5), info=7),
    ]
    entries = [
        make_entry(name="hips", parent=-1, children=[1], shader="models/test/body"),
        make_entry(name="head", parent=0, shader="models/test/head"),
    ]
    lods = [
        [
            make_surface(index=0, bone_refs=[10, 11, 12], vertices=vertices,
                         triangles=[(0, 1, 2)]),
            make_surface(index=1),
        ],
        [make_surface(index=0), make_surface(index=1)],
    ]
    return decode(BytesIO(build_glm(hierarchy=entries, lods=lods, num_bones=13)))


class TestBuffers(unittest.TestCase):
    def test_vertex_layout_is_44_bytes(self):
        self.assertEqual(VERTEX_DTYPE.itemsize, 44)

    def test_vertex_buffer(self):
        surface = decode(BytesIO(minimal_glm())).lods[0].surfaces[0]
        buffer = build_vertex_buffer(surface)
        self.assertEqual(buffer.dtype, VERTEX_DTYPE)
        self.assertEqual(len(buffer), 1)
        np.testing.assert_array_equal(buffer["position"][0], [1.0, 2.0, 3.0])
        np.testing.assert_array_equal(buffer["normal"][0], [0.0, 0.0, 1.0])
        np.testing.assert_array_equal(buffer["uv"][0], [0.5, 0.5])
        np.testing.assert_array_equal(buffer["bone_weights"][0], [65472, 0, 0, 0])

    def test_empty_vertex_buffer(self):
        buffer = build_vertex_buffer(GlmSurface(index=0))
        self.assertEqual(buffer.shape, (0,))

    def test_index_buffer(self):
        surface = GlmSurface(
            index=0,
            triangles=[GlmTriangle((0, 1, 2)), GlmTriangle((2, 1, 0))],
            vertices=[GlmVertex((0.0, 0.0, 1.0), (0.0, 0.0, 0.0)) for _ in range(3)],
        )
        indices = build_index_buffer(surface)
        self.assertEqual(indices.dtype, np.uint32)
        np.testing.assert_array_equal(indices, [0, 1, 2, 2, 1, 0])

    def test_index_buffer_rejects_out_of_range_indices(self):
        for triangle in ((0, 1, 3), (0, -1, 1)):
            surface = GlmSurface(
                index=4,
                triangles=[GlmTriangle(triangle)],
                vertices=[GlmVertex((0.0, 0.0, 1.0), (0.0, 0.0, 0.0)) for _ in range(3)],
            )
            with self.subTest(triangle=triangle):
                with self.assertRaises(ValueError):
                    build_index_buffer(surface)


class TestExtractRenderableData(unittest.TestCase):
    def test_surfaces_are_named_from_hierarchy(self):
        surfaces, _ = extract_renderable_data(skinned_model())
        self.assertEqual([s.name for s in surfaces], ["hips", "head"])
        self.assertEqual([s.shader for s in surfaces], ["models/test/body", "models/test/head"])

    def test_arrays(self):
        surfaces, _ = extract_renderable_data(skinned_model())
        body = surfaces[0]
        self.assertEqual(body.positions.shape, (3, 3))
        self.assertEqual(body.normals.shape, (3, 3))
        np.testing.assert_array_equal(body.uvs, [[0.0, 1.0], [1.0, 0.0], [0.5, 0.5]])
        np.testing.assert_array_equal(body.indices, [0, 1, 2])
        self.assertEqual(surfaces[1].positions.shape, (0, 3))

    def test_skinning_maps_through_bone_references(self):
        surfaces, _ = extract_renderable_data(skinned_model())
        skin = surfaces[0].skinning_data
        self.assertEqual(skin.bone_ids.shape, (3, 4))
        # vertex 0: local bones 0 and 1, vertex 1: local bone 2, vertex 2: local bone 7 is out of range
        np.testing.assert_array_equal(skin.bone_ids[0], [10, 11, 10, 10])
        np.testing.assert_array_equal(skin.bone_ids[1], [12, 10, 10, 10])
        np.testing.assert_array_equal(skin.bone_ids[2], [0, 10, 10, 10])
        self.assertEqual(skin.bone_weights.dtype, np.float32)
        np.testing.assert_allclose(skin.bone_weights[0], [255 * 64 / 65535.0, 768 * 64 / 65535.0, 0, 0])
        np.testing.assert_allclose(skin.bone_weights[1], [1023 * 64 / 65535.0, 0, 0, 0])

    def test_weights_on_missing_bone_references_are_zeroed(self):
        surfaces, _ = extract_renderable_data(skinned_model())
        skin = surfaces[0].skinning_data
        # vertex 2 puts its whole weight on local bone 7, the surface only has 3 references
        np.testing.assert_array_equal(skin.bone_weights[2], [0.0, 0.0, 0.0, 0.0])

    def test_surface_without_bone_references_has_no_weights(self):
        surfaces, _ = extract_renderable_data(decode(BytesIO(minimal_glm())))
        skin = surfaces[0].skinning_data
        np.testing.assert_array_equal(skin.bone_ids, [[0, 0, 0, 0]])
        np.testing.assert_array_equal(skin.bone_weights, [[0.0, 0.0, 0.0, 0.0]])

    def test_bounding_box(self):
        _, bbox = extract_renderable_data(skinned_model())
        np.testing.assert_array_equal(bbox[0], [-1.0, -2.0, 0.0])
        np.testing.assert_array_equal(bbox[1], [3.0, 5.0, 2.0])

    def test_lod_without_vertices_has_no_bounding_box(self):
        surfaces, bbox = extract_renderable_data(skinned_model(), lod_index=1)
        self.assertEqual(len(surfaces), 2)
        self.assertIsNone(bbox)

    def test_invalid_lod(self):
        with self.assertRaises(IndexError):
            extract_renderable_data(skinned_model(), lod_index=2)


if __name__ == '__main__':
    unittest.main()
