"""mammoth - 项目模板与仓库管理工具"""

__version__ = "0.3.0"
