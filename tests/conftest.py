import os

# 测试时不写文件日志
os.environ.setdefault("LOG_DISABLE_FILE", "true")
