"""
Small vector/quaternion kernel used by the skeleton decoder.

Values are immutable; every operation returns a fresh object.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

EULER_EPSILON = 16 * 1e-5


@dataclass(frozen=True)
class Vector3:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __add__(self, other: "Vector3") -> "Vector3":
        return Vector3(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: "Vector3") -> "Vector3":
        return Vector3(self.x - other.x, self.y - other.y, self.z - other.z)

    def __neg__(self) -> "Vector3":
        return Vector3(-self.x, -self.y, -self.z)

    def __mul__(self, scale: float) -> "Vector3":
        return Vector3(self.x * scale, self.y * scale, self.z * scale)

    __rmul__ = __mul__

    def __iter__(self):
        yield self.x
        yield self.y
        yield self.z

    def dot(self, other: "Vector3") -> float:
        return self.x * other.x + self.y * other.y + self.z * other.z

    def cross(self, other: "Vector3") -> "Vector3":
        return Vector3(
            self.y * other.z - self.z * other.y,
            self.z * other.x - self.x * other.z,
            self.x * other.y - self.y * other.x,
        )

    def length_squared(self) -> float:
        return self.dot(self)

    def length(self) -> float:
        return math.sqrt(self.length_squared())

    def normalized(self) -> "Vector3":
        # zero stays zero
        n = self.length()
        if n == 0.0:
            return Vector3(0.0, 0.0, 0.0)
        return Vector3(self.x / n, self.y / n, self.z / n)


ZERO = Vector3(0.0, 0.0, 0.0)


@dataclass(frozen=True)
class Quaternion:
    w: float = 1.0
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @classmethod
    def from_vector(cls, vec: Vector3, w: float = 0.0) -> "Quaternion":
        return cls(w, vec.x, vec.y, vec.z)

    @property
    def vec(self) -> Vector3:
        return Vector3(self.x, self.y, self.z)

    def __mul__(self, other: "Quaternion") -> "Quaternion":
        lv = self.vec
        rv = other.vec
        v = rv * self.w + lv * other.w + lv.cross(rv)
        return Quaternion(self.w * other.w - lv.dot(rv), v.x, v.y, v.z)

    def length_squared(self) -> float:
        return self.w * self.w + self.vec.length_squared()

    def length(self) -> float:
        return math.sqrt(self.length_squared())

    def conjugate(self) -> "Quaternion":
        return Quaternion(self.w, -self.x, -self.y, -self.z)

    def inverted(self) -> "Quaternion":
        sq = self.length_squared()
        if sq == 0.0:
            return self
        inv = 1.0 / sq
        return Quaternion(self.w * inv, -self.x * inv, -self.y * inv, -self.z * inv)

    def rotate(self, vec: Vector3) -> Vector3:
        """Apply this rotation to ``vec`` as q * (vec, 0) * conj(q)."""
        return (self * Quaternion.from_vector(vec) * self.conjugate()).vec

    def is_close(self, other: "Quaternion", tol: float = 1e-5) -> bool:
        return (
            abs(self.w - other.w) <= tol
            and abs(self.x - other.x) <= tol
            and abs(self.y - other.y) <= tol
            and abs(self.z - other.z) <= tol
        )


IDENTITY = Quaternion(1.0, 0.0, 0.0, 0.0)


def matrix_to_quaternion(m: Sequence[Sequence[float]]) -> Quaternion:
    """Convert a 3x3 orientation block (``m[row][col]``) to a quaternion.

    Uses the trace when it is positive, otherwise the largest diagonal
    element picks the permutation.
    """
    trace = m[0][0] + m[1][1] + m[2][2]
    if trace > 0.0:
        s = math.sqrt(trace + 1.0)
        w = s / 2.0
        s = 0.5 / s
        return Quaternion(
            w,
            (m[1][2] - m[2][1]) * s,
            (m[2][0] - m[0][2]) * s,
            (m[0][1] - m[1][0]) * s,
        )

    nxt = (1, 2, 0)
    i = 0
    if m[1][1] > m[0][0]:
        i = 1
    if m[2][2] > m[i][i]:
        i = 2
    j = nxt[i]
    k = nxt[j]

    q = [0.0, 0.0, 0.0, 0.0]
    s = math.sqrt(max(m[i][i] - (m[j][j] + m[k][k]) + 1.0, 0.0))
    q[i] = s * 0.5
    if s != 0.0:
        s = 0.5 / s
    q[3] = (m[j][k] - m[k][j]) * s
    q[j] = (m[i][j] + m[j][i]) * s
    q[k] = (m[i][k] + m[k][i]) * s
    return Quaternion(q[3], q[0], q[1], q[2])


def quaternion_to_euler(q: Quaternion) -> Vector3:
    """Static-frame XYZ Euler angles in radians."""
    n = q.length_squared()
    s = 2.0 / n if n > 0.0 else 0.0
    xs, ys, zs = q.x * s, q.y * s, q.z * s
    wx, wy, wz = q.w * xs, q.w * ys, q.w * zs
    xx, xy, xz = q.x * xs, q.x * ys, q.x * zs
    yy, yz, zz = q.y * ys, q.y * zs, q.z * zs

    m00 = 1.0 - (yy + zz)
    m10 = xy + wz
    m11 = 1.0 - (xx + zz)
    m12 = yz - wx
    m20 = xz - wy
    m21 = yz + wx
    m22 = 1.0 - (xx + yy)

    cy = math.sqrt(m00 * m00 + m10 * m10)
    if cy > EULER_EPSILON:
        return Vector3(math.atan2(m21, m22), math.atan2(-m20, cy), math.atan2(m10, m00))
    return Vector3(math.atan2(-m12, m11), math.atan2(-m20, cy), 0.0)
