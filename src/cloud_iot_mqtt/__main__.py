from cloud_iot_mqtt.main import main

if __name__ == "__main__":
    raise SystemExit(main())
