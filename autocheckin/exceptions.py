# autocheckin/exceptions.py

class ConfigError(Exception):
    """任务配置不合法（班级ID、Cookie、坐标等）"""
    pass

class StorageError(Exception):
    """配置文件无法读取、已损坏或无法写入"""
    pass

class UpstreamError(Exception):
    """外部平台或消息接口不可达，或返回了无法解析的内容"""
    pass

class RejectedError(Exception):
    """平台明确拒绝了本次请求（凭证失效、需要密码、不在签到时间等），重试无意义"""
    pass

class TransientFailureError(Exception):
    """网络错误、超时或 5xx 响应，可以稍后重试"""
    pass

class LoginExpiredError(Exception):
    """扫码登录会话已超过最大有效期，需要重新获取二维码"""
    pass

class TaskNotFoundError(Exception):
    """指定 ID 的任务不存在"""
    def __init__(self, task_id: str):
        super().__init__(f"任务不存在: {task_id}")
        self.task_id = task_id

class TaskBusyError(Exception):
    """任务正在执行中，不能再次手动触发"""
    def __init__(self, task_id: str):
        super().__init__(f"任务 {task_id} 正在执行中，请稍后再试")
        self.task_id = task_id
