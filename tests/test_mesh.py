import numpy as np
import pytest

from archive_builders import (
    POS_BLEND,
    POS_NORMAL_UV,
    build_mesh_geometry,
    indices,
    pos_blend_vertices,
    pos_normal_uv_vertices,
)
from rpack_common import DiagnosticKind, DiagnosticLog
from rpack_math import IDENTITY, Vector3
from rpack_mesh import (
    Bone,
    MeshModel,
    VertexDeclaration,
    VertexElement,
    compose_world_transforms,
    decode_mesh,
    decode_vertices,
    fmt_fixed,
    fmt_general,
    write_ascii,
    write_mesh_files,
    write_smd,
)

TRIANGLE = [(0.0, 0.0, 0.0), (1.0, 0.0, 0.0), (0.0, 1.0, 0.0)]


def decode_triangle(base=0):
    geometry = build_mesh_geometry(
        bones=[("root", -1, (0.0, 0.0, 0.0)), ("turret", 0, (0.0, 0.0, 2.0))],
        elements=POS_NORMAL_UV,
        index_counts=[3],
        vertex_count=3,
        base=base,
    )
    diags = DiagnosticLog()
    model = decode_mesh(
        geometry, base, pos_normal_uv_vertices(TRIANGLE), 0, indices([0, 1, 2]), 0, "tank", diags
    )
    return model, diags


def test_decode_static_mesh():
    model, diags = decode_triangle()
    assert len(diags) == 0
    assert [b.name for b in model.bones] == ["root", "turret"]
    assert [b.parent for b in model.bones] == [-1, 0]
    assert model.declared_submesh_count == 1
    assert len(model.submeshes) == 1

    sm = model.submeshes[0]
    assert sm.name == "sm_0_root_0"
    assert sm.vertex_count == 3
    assert sm.uv_count == 1
    assert not sm.has_blend
    np.testing.assert_allclose(sm.positions, TRIANGLE)
    np.testing.assert_allclose(sm.normals[0], [0.0, 1.0, 0.0])
    np.testing.assert_allclose(sm.uvs[:, 0, :], [[0.0, 1.0], [0.5, 1.0], [1.0, 1.0]])
    # winding reversed
    assert sm.triangles.tolist() == [[2, 1, 0]]


def test_decode_at_nonzero_base():
    model, diags = decode_triangle(base=64)
    assert len(diags) == 0
    assert model.submeshes[0].triangles.tolist() == [[2, 1, 0]]


def test_world_translation_accumulates():
    model, _ = decode_triangle()
    turret = model.bones[1]
    assert turret.world_translation == Vector3(0.0, 0.0, 2.0)
    assert turret.world_rotation.is_close(IDENTITY)


def test_blended_mesh_maps_local_bone_indices():
    geometry = build_mesh_geometry(
        bones=[("root", -1, (0.0, 0.0, 0.0))],
        elements=POS_BLEND,
        index_counts=[3],
        vertex_count=3,
        bone_map=[5, 7],
    )
    diags = DiagnosticLog()
    model = decode_mesh(
        geometry, 0, pos_blend_vertices(TRIANGLE, local_bone=1), 0, indices([0, 1, 2]), 0, "soldier", diags
    )
    sm = model.submeshes[0]
    assert sm.has_blend
    assert sm.bone_indices[:, 0].tolist() == [7, 7, 7]
    np.testing.assert_allclose(sm.weights[:, 0], [1.0, 1.0, 1.0])
    np.testing.assert_allclose(sm.normals[0], [0.0, 0.0, 1.0])
    assert len(diags) == 0


def test_submesh_is_rebased_to_first_used_vertex():
    geometry = build_mesh_geometry(
        bones=[("root", -1, (0.0, 0.0, 0.0))],
        elements=POS_NORMAL_UV,
        index_counts=[3, 3],
        vertex_count=6,
    )
    points = TRIANGLE + [(5.0, 0.0, 0.0), (6.0, 0.0, 0.0), (5.0, 1.0, 0.0)]
    model = decode_mesh(
        geometry, 0, pos_normal_uv_vertices(points), 0, indices([0, 1, 2, 3, 4, 5]), 0, "two", DiagnosticLog()
    )
    second = model.submeshes[1]
    assert second.vertex_count == 3
    assert second.triangles.tolist() == [[2, 1, 0]]
    assert second.positions[0].tolist() == [5.0, 0.0, 0.0]


def test_index_past_vertex_count_skips_submesh():
    geometry = build_mesh_geometry(
        bones=[("root", -1, (0.0, 0.0, 0.0))],
        elements=POS_NORMAL_UV,
        index_counts=[3],
        vertex_count=3,
    )
    diags = DiagnosticLog()
    model = decode_mesh(geometry, 0, pos_normal_uv_vertices(TRIANGLE), 0, indices([0, 1, 9]), 0, "bad", diags)
    assert model.submeshes == []
    assert diags.of_kind(DiagnosticKind.UNRESOLVED_REFERENCE)


def test_unknown_attribute_advances_by_type_width():
    decl = VertexDeclaration(
        (
            VertexElement(2, 0, 0),
            VertexElement(16, 9, 0),  # unknown semantic, 8 bytes
            VertexElement(15, 5, 0),
        )
    )
    raw = np.zeros(1, dtype=[("p", "<f4", (3,)), ("pad", "V8"), ("uv", "<f2", (2,))])
    raw["p"] = [1.0, 2.0, 3.0]
    raw["uv"] = [0.25, 0.75]
    diags = DiagnosticLog()
    seen = set()
    verts = decode_vertices(raw.tobytes(), 0, 1, decl, diags, "m", seen)
    np.testing.assert_allclose(verts.positions[0], [1.0, 2.0, 3.0])
    np.testing.assert_allclose(verts.uvs[0, 0], [0.25, 0.75])
    assert len(diags.of_kind(DiagnosticKind.UNKNOWN_FORMAT_CODE)) == 1

    # reported once per (semantic, type) pair
    decode_vertices(raw.tobytes(), 0, 1, decl, diags, "m", seen)
    assert len(diags) == 1


def test_parent_forward_reference_is_treated_as_root():
    bones = [
        Bone(0, "a", 1, Vector3(1, 0, 0), IDENTITY),
        Bone(1, "b", -1, Vector3(0, 1, 0), IDENTITY),
    ]
    diags = DiagnosticLog()
    out = compose_world_transforms(bones, diags)
    assert out[0].world_translation == Vector3(1, 0, 0)
    assert diags.of_kind(DiagnosticKind.STRUCTURAL_MISMATCH)


def test_fixed_and_general_formatting():
    assert fmt_fixed(1.5) == "1.500000"
    assert fmt_fixed(-0.0) == "0.000000"
    assert fmt_fixed(-1e-9) == "0.000000"
    assert fmt_general(1.5) == "1.5"
    assert fmt_general(2.0) == "2"
    assert fmt_general(-0.0) == "0"
    assert fmt_general(0.1234567) == "0.123457"


def test_smd_output(tmp_path):
    model, _ = decode_triangle()
    text = write_smd(tmp_path / "tank.smd", model).read_text(encoding="utf-8")
    lines = text.splitlines()
    assert lines[:5] == ["version 1", "nodes", '0 "root" -1', '1 "turret" 0', "end"]
    assert lines[5:7] == ["skeleton", "time 0"]
    assert lines[8] == "1  0.000000 0.000000 2.000000  0.000000 0.000000 0.000000"
    assert lines[-1] == "end"


def test_ascii_output(tmp_path):
    model, _ = decode_triangle()
    lines = write_ascii(tmp_path / "tank.ascii", model).read_text(encoding="utf-8").splitlines()
    assert lines[0] == "2"
    assert lines[1:4] == ["root", "-1", "0.000000 0.000000 0.000000"]
    assert lines[7] == "1"
    assert lines[8:12] == ["sm_0_root_0", "1", "0", "3"]
    # first vertex: position, normal, color, uv, indices, weights
    assert lines[12:18] == ["0 0 0", "0 1 0", "0 0 0 0", "0 1", "0 0 0 0", "1 0 0 0"]
    assert lines[-2:] == ["1", "2 1 0"]


def test_buildterrain_meshes_are_not_written(tmp_path):
    model = MeshModel(name="map_buildterrain_01", bones=[])
    assert write_mesh_files(model, tmp_path) == []
    assert list(tmp_path.iterdir()) == []


@pytest.mark.parametrize("stem", [None, "custom"])
def test_write_mesh_files_names(tmp_path, stem):
    model, _ = decode_triangle()
    written = write_mesh_files(model, tmp_path / "models", stem)
    expected = stem or "tank"
    assert [p.name for p in written] == [f"{expected}.smd", f"{expected}.ascii"]
