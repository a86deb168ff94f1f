from dataclasses import dataclass, field

from qfic.grid import Block, Orientation

NO_PARENT = -1


@dataclass(frozen=True)
class TransformCode:
    range_block: Block
    domain_block: Block
    orientation: Orientation
    scale: float
    offset: float
    channel: int = 0


@dataclass(frozen=True)
class Codebook:
    width: int
    height: int
    channels: int
    codes: tuple[TransformCode, ...]

    @staticmethod
    def from_codes(width: int, height: int, codes: list[TransformCode], channels: int | None = None) -> "Codebook":
        if channels is None:
            channels = 1 + max((c.channel for c in codes), default=0)
        return Codebook(width, height, channels, tuple(codes))

    def channel_codes(self, channel: int) -> list[TransformCode]:
        return [c for c in self.codes if c.channel == channel]

    @property
    def max_scale(self) -> float:
        return max((abs(c.scale) for c in self.codes), default=0.)


@dataclass
class QuadtreeNode:
    block: Block
    parent: int = NO_PARENT
    children: tuple[int, int, int, int] | None = None
    variance: float = 0.

    def is_leaf(self) -> bool:
        return self.children is None


@dataclass
class Quadtree:
    """Arena of nodes: parents and children reference each other by index into nodes."""
    nodes: list[QuadtreeNode] = field(default_factory=list)
    roots: list[int] = field(default_factory=list)

    def add(self, block: Block, parent: int = NO_PARENT, variance: float = 0.) -> int:
        self.nodes.append(QuadtreeNode(block, parent, None, variance))
        return len(self.nodes) - 1

    def leaves(self) -> list[Block]:
        """Range blocks in depth-first order: roots row by row, children TL, TR, BL, BR."""
        res = []
        stack = list(reversed(self.roots))
        while stack:
            node = self.nodes[stack.pop()]
            if node.is_leaf():
                res.append(node.block)
            else:
                stack.extend(reversed(node.children))
        return res

    def depth(self, idx: int) -> int:
        d = 0
        while self.nodes[idx].parent != NO_PARENT:
            idx = self.nodes[idx].parent
            d += 1
        return d
