# promptcore/core/exceptions.py

# ---  定义异常类 (Domain Layer) ---
# status_code 供上层 HTTP 处理器直接映射为响应码


class AppError(Exception):
    """所有业务异常的基类"""

    status_code = 400  # 默认 400
    retriable = False

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "code": self.status_code,
            "message": self.message,
            "details": self.details,
        }


class TooManyImagesError(AppError):
    """视觉模型单条消息只支持一张图片"""

    status_code = 400


class ImageDecodeError(AppError):
    """图片无法解码"""

    status_code = 400


class MissingAspectRatioError(AppError):
    """图片编码器没有返回宽高比索引（集成错误）"""

    status_code = 500


class TokenizationError(AppError):
    """Tokenizer 调用失败"""

    status_code = 500


class RenderError(AppError):
    """Prompt 模板渲染失败"""

    status_code = 500


class CancellationError(AppError):
    """请求在组装过程中被取消，调用方可以决定是否重试"""

    status_code = 499
    retriable = True
