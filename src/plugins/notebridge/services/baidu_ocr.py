"""百度图片翻译接口做文字识别(from/to 相同语言时只识别不翻译)。

签名规则: sign = md5(appid + md5(image) + salt + cuid + mac + secret)
"""

from __future__ import annotations

import hashlib
import io
import time

import httpx
from nonebot import logger
from PIL import Image, UnidentifiedImageError

from ..errors import ExternalServiceError

OCR_URL = "https://fanyi-api.baidu.com/api/trans/sdk/picture"
_CUID = "telegram_bot"
_MAC = "00:00:00:00:00:00"
# 接口限制 4MB,长边超过该值时先缩小
_MAX_SIDE = 4096


def prepare_image(image_bytes: bytes) -> bytes:
    """统一转为 JPEG(透明图/动图取首帧),过大时等比缩小。"""

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.seek(0)
            if img.format == "JPEG" and max(img.size) <= _MAX_SIDE:
                return image_bytes
            frame = img.convert("RGB")
            frame.thumbnail((_MAX_SIDE, _MAX_SIDE))
            buf = io.BytesIO()
            frame.save(buf, format="JPEG", quality=90)
            return buf.getvalue()
    except (UnidentifiedImageError, OSError) as exc:
        # 交给接口自己判断,识别失败会走重试
        logger.warning(f"图片预处理失败,按原始数据提交:{exc}")
        return image_bytes


class BaiduOCRClient:
    def __init__(self, appid: str, secret: str, *, timeout: float = 30.0) -> None:
        self.appid = appid
        self.secret = secret
        self.timeout = timeout

    def _sign(self, image_md5: str, salt: str) -> str:
        raw = f"{self.appid}{image_md5}{salt}{_CUID}{_MAC}{self.secret}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    async def recognize_image(self, image_bytes: bytes) -> str:
        """识别图片文字,按行拼接返回;没有文字时返回空字符串。"""

        if not self.appid or not self.secret:
            raise ExternalServiceError("baidu_ocr", "缺少百度 OCR 的 appid 或 secret 配置")

        data = prepare_image(image_bytes)
        salt = str(int(time.time() * 1000))
        image_md5 = hashlib.md5(data).hexdigest()
        form = {
            "from": "zh",
            "to": "zh",
            "appid": self.appid,
            "salt": salt,
            "cuid": _CUID,
            "mac": _MAC,
            "version": "3",
            "sign": self._sign(image_md5, salt),
        }
        files = {"image": ("image.jpg", data, "image/jpeg")}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(OCR_URL, data=form, files=files)
            resp.raise_for_status()
            body = resp.json()

        content = (body.get("data") or {}).get("content") if isinstance(body, dict) else None
        if not isinstance(content, list):
            code = body.get("error_code") if isinstance(body, dict) else None
            raise ExternalServiceError("baidu_ocr", f"识别失败或返回格式异常 error_code={code}")

        text = "\n".join(str(seg.get("src") or "") for seg in content if isinstance(seg, dict))
        logger.debug(f"OCR 识别完成,{len(content)} 段,{len(text)} 字")
        return text
