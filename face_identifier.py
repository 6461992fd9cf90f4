"""命令行入口：用参考图库识别一张图像中的人脸。

人脸检测不在本项目内：通过 --box 传入人脸框（x,y,w,h，可重复），
不传则把整张图像当作一张已裁剪的人脸。
"""

from __future__ import annotations

import argparse

from typing import List, Optional

import cv2

from facematch.face.embedder import InsightFaceEmbedder
from facematch.face.identifier import FaceIdentifier, IdentifierConfig
from facematch.face.matcher import DEFAULT_THRESHOLD
from facematch.face.preprocess import FaceLocalization
from facematch.utils.log import get_logger, set_level

logger = get_logger(__name__)


def parse_box(text: str) -> FaceLocalization:
    try:
        x, y, w, h = (float(v) for v in text.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"box must be x,y,w,h, got {text!r}") from None
    if w <= 0 or h <= 0:
        raise argparse.ArgumentTypeError(f"box width/height must be positive, got {text!r}")
    return FaceLocalization.from_xywh(x, y, w, h)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="人脸识别：与参考图库比对，输出最佳身份")
    parser.add_argument("image", help="输入图像路径")
    parser.add_argument("--gallery", "-g", default="data/gallery", help="参考图库路径（每人一个子目录）")
    parser.add_argument("--box", "-b", action="append", type=parse_box, default=None, help="人脸框 x,y,w,h，可重复")
    parser.add_argument(
        "--threshold",
        "-t",
        type=float,
        default=DEFAULT_THRESHOLD,
        help=f"最低聚合分数（默认 {DEFAULT_THRESHOLD}）。euclidean 下分数为 1-L2 距离；归一化 ArcFace 特征下默认值约等于余弦 0.4",
    )
    parser.add_argument("--top-k", "-k", type=int, default=3, help="每个身份取最相似的 K 个样本求平均（默认 3）")
    parser.add_argument("--metric", choices=["euclidean", "cosine"], default="euclidean", help="相似度度量")
    parser.add_argument("--model", default="buffalo_l", help="InsightFace 模型名称")
    parser.add_argument("--device", choices=["auto", "cpu", "gpu"], default="auto", help="计算设备")
    parser.add_argument("--skip-bad-references", action="store_true", help="跳过无法提取特征的参考图像")
    parser.add_argument("--debug", action="store_true", help="输出每张人脸的候选排名")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.debug:
        set_level("DEBUG")

    image = cv2.imread(args.image)
    if image is None:
        raise ValueError(f"无法读取图像: {args.image}")

    embedder = InsightFaceEmbedder(model_name=args.model, device=args.device)
    identifier = FaceIdentifier(
        embedder,
        IdentifierConfig(
            threshold=args.threshold,
            top_k=args.top_k,
            metric=args.metric,
            skip_failed_references=args.skip_bad_references,
        ),
    )
    added = identifier.enroll(args.gallery)
    info = identifier.gallery_info()
    logger.info(f"图库: {info['total_labels']} 个人, {added} 个样本, dim={info['dim']}")

    h, w = image.shape[:2]
    boxes = args.box or [FaceLocalization(0, 0, w, h)]
    embeddings = identifier.embed_faces(image, boxes)

    for i, (box, emb) in enumerate(zip(boxes, embeddings)):
        x, y, bw, bh = box.clamped(image.shape)
        ranked = identifier.matcher.rank(emb, identifier.gallery, location=box)
        logger.debug(f"人脸 {i + 1} 候选: {[(p.label, p.score) for p in ranked[:5]]}")
        pred = ranked[0] if ranked else None
        if pred is None:
            logger.info(f"人脸 {i + 1} ({x},{y},{bw},{bh}): 未知")
        else:
            logger.info(f"人脸 {i + 1} ({x},{y},{bw},{bh}): {pred.label} (分数: {pred.score:.4f})")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
