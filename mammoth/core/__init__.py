"""核心层: 数据模型、异常、配置与注册表存储"""
