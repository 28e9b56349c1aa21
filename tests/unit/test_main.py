"""
命令行入口单元测试

覆盖：
- JSON 请求读取：base64 图片、非字符串 format
- 正常组装输出 JSON 结果并写入日志文件
- 业务异常返回非零退出码，错误日志带 stage 字段
"""

import base64
import json
import logging

import pytest

from promptcore import main as cli
from promptcore.models.schemas.chat_schema import MessageRole


class FakeTokenizer:
    """按空白切词，避免测试依赖 tiktoken 的编码文件"""

    def __init__(self, encoding=None):
        self.encoding = encoding

    async def __call__(self, text: str) -> list[int]:
        return list(range(len(text.split())))


@pytest.fixture(autouse=True)
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def fake_tokenizer(mocker):
    return mocker.patch.object(cli, "TiktokenTokenizer", FakeTokenizer)


def write_request(tmp_path, payload: dict):
    path = tmp_path / "request.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


# ============================================================
# 请求读取
# ============================================================


class TestLoadRequest:
    """load_request"""

    def test_images_and_format_decoded(self, tmp_path):
        path = write_request(
            tmp_path,
            {
                "model": {"name": "llava", "families": ["clip"]},
                "messages": [
                    {
                        "role": "user",
                        "content": "what is [img]",
                        "images": [base64.b64encode(b"\x89PNG").decode()],
                    }
                ],
                "format": {"type": "object"},
            },
        )
        request = cli.load_request(path)

        assert request.messages[0].role == MessageRole.USER
        assert request.messages[0].images == [b"\x89PNG"]
        assert json.loads(request.format) == {"type": "object"}

    def test_string_format_kept(self, tmp_path):
        path = write_request(
            tmp_path,
            {
                "model": {"name": "qwen2"},
                "messages": [{"role": "user", "content": "hi"}],
                "format": "json",
            },
        )
        assert cli.load_request(path).format == b"json"


# ============================================================
# main
# ============================================================


class TestMain:
    """promptcore-assemble"""

    def test_prints_assembled_prompt(self, tmp_path, capsys):
        path = write_request(
            tmp_path,
            {
                "model": {"name": "qwen2", "families": ["qwen2"]},
                "messages": [
                    {"role": "system", "content": "be brief"},
                    {"role": "user", "content": "hi"},
                ],
                "tools": [{"function": {"name": "get_time"}}],
            },
        )

        code = cli.main([str(path), "--log-dir", str(tmp_path / "logs")])

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["prompt"].startswith("<|im_start|>system")
        assert output["messages_used"] == 2
        assert output["truncated"] is False
        assert output["format"]["properties"]["name"]["enum"] == ["get_time"]
        assert (tmp_path / "logs" / "application.log").exists()

    def test_image_metadata_reported(self, tmp_path, capsys):
        path = write_request(
            tmp_path,
            {
                "model": {"name": "llava", "families": ["clip"]},
                "messages": [
                    {
                        "role": "user",
                        "content": "look",
                        "images": [base64.b64encode(b"abc").decode()],
                    }
                ],
            },
        )

        assert cli.main([str(path), "--log-dir", str(tmp_path / "logs")]) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["images"] == [{"id": 0, "aspect_ratio_id": 0, "size": 3}]
        assert "[img-0]look" in output["prompt"]

    def test_app_error_exit_code(self, tmp_path, capsys):
        image = base64.b64encode(b"x").decode()
        path = write_request(
            tmp_path,
            {
                "model": {"name": "llama3.2-vision", "families": ["mllama"]},
                "messages": [
                    {"role": "user", "content": "compare", "images": [image, image]}
                ],
            },
        )
        log_dir = tmp_path / "logs"

        code = cli.main([str(path), "--log-dir", str(log_dir), "--log-level", "ERROR"])

        assert code == 1
        error = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert error["code"] == 400
        assert error["details"]["images"] == 2

        for handler in logging.getLogger().handlers:
            handler.flush()
        lines = (log_dir / "error.log").read_text(encoding="utf-8").splitlines()
        records = [json.loads(line) for line in lines]
        assert any(r.get("error_code") == 400 for r in records)
        assert any(r.get("action") == "assemble_chat_prompt" for r in records)
