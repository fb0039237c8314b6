# autocheckin/config/storage.py
import json
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from autocheckin.exceptions import StorageError

class ConfigStorageInterface(ABC):
    @abstractmethod
    def load(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def save(self, config: Dict[str, Any]) -> None:
        pass

    def backup_corrupt(self) -> Optional[str]:
        """把无法解析的配置移到一旁，返回备份位置。默认不做任何事。"""
        return None

class JsonConfigStorage(ConfigStorageInterface):
    def __init__(self, config_path: str):
        self.config_path = config_path

    def load(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise StorageError(f"配置文件 {self.config_path} 格式错误: {e}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"读取配置文件 {self.config_path} 时出错: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"配置文件 {self.config_path} 顶层结构应为对象 (dict)")
        return data

    def save(self, config: Dict[str, Any]) -> None:
        # 先写同目录临时文件再 os.replace，读者只会看到旧文件或完整的新文件
        directory = os.path.dirname(os.path.abspath(self.config_path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{os.path.basename(self.config_path)}.", suffix=".tmp", dir=directory
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(config, f, indent=4, ensure_ascii=False)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.config_path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"保存配置文件 {self.config_path} 时出错: {e}") from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def backup_corrupt(self) -> Optional[str]:
        if not os.path.exists(self.config_path):
            return None
        backup_path = f"{self.config_path}.corrupt-{datetime.now().strftime('%Y%m%d%H%M%S')}"
        try:
            os.replace(self.config_path, backup_path)
        except OSError as e:
            raise StorageError(f"备份损坏的配置文件失败: {e}") from e
        return backup_path
